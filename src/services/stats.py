"""Aggregated coupon and registration statistics for the admin dashboard."""

from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.database import crud
from src.database.models import (
    Coupon, CouponCopyEvent, CouponUpload, CouponUsage, Form, Registration, utcnow
)
from src.exceptions import NotFoundError


def _count(db: Session, stmt) -> int:
    return db.scalar(stmt) or 0


def _pool_stats(db: Session, pool_clause) -> Dict[str, int]:
    """Coupon totals for one pool (form-bound or general)."""
    total = _count(db, select(func.count(Coupon.id)).where(pool_clause))
    available = _count(
        db, select(func.count(Coupon.id)).where(pool_clause, crud.eligible_coupon_clause())
    )
    allocated = _count(
        db,
        select(func.count(CouponUsage.id)).join(Coupon, Coupon.id == CouponUsage.coupon_id).where(pool_clause)
    )
    redeemed = _count(
        db,
        select(func.count(CouponUsage.id))
        .join(Coupon, Coupon.id == CouponUsage.coupon_id)
        .where(pool_clause, CouponUsage.redeemed_at.is_not(None))
    )
    copies = _count(
        db,
        select(func.count(CouponCopyEvent.id))
        .join(Coupon, Coupon.id == CouponCopyEvent.coupon_id)
        .where(pool_clause)
    )
    return {
        "total": total,
        "available": available,
        "allocated": allocated,
        "redeemed": redeemed,
        "copy_events": copies,
    }


def get_overview(db: Session) -> Dict[str, Any]:
    """Platform-wide totals."""
    return {
        "forms": _count(db, select(func.count(Form.id))),
        "active_forms": _count(db, select(func.count(Form.id)).where(Form.is_active == True)),
        "registrations": crud.count_registrations(db),
        "registrations_with_coupon": _count(
            db, select(func.count(Registration.id)).where(Registration.coupon_code.is_not(None))
        ),
        "coupons_redeemed_by_registrants": _count(
            db, select(func.count(Registration.id)).where(Registration.coupon_used == True)
        ),
        "uploads": _count(db, select(func.count(CouponUpload.id))),
        "coupons": _pool_stats(db, Coupon.id.is_not(None)),
        "general_pool": _pool_stats(db, Coupon.form_id.is_(None)),
    }


def get_form_stats(db: Session, form_id: UUID) -> Dict[str, Any]:
    """Registration and coupon pool numbers for one form."""
    form = crud.get_form_by_id(db, form_id)
    if form is None:
        raise NotFoundError("Form not found")

    return {
        "form_id": form.id,
        "slug": form.slug,
        "coupon_limit": form.coupon_limit,
        "registrations": crud.count_registrations(db, form.id),
        "registrations_with_coupon": _count(
            db,
            select(func.count(Registration.id)).where(
                Registration.form_id == form.id,
                Registration.coupon_code.is_not(None)
            )
        ),
        "coupons": _pool_stats(db, Coupon.form_id == form.id),
    }


def get_coupon_stats(db: Session, code: str) -> Dict[str, Any]:
    """Usage history and copy telemetry of one coupon."""
    coupon = crud.get_coupon_by_code(db, code)
    if coupon is None:
        raise NotFoundError("Coupon not found")

    usages = crud.get_coupon_usages(db, coupon.id)
    last_copy = crud.get_last_copy_event(db, coupon.id)
    return {
        "code": coupon.code,
        "max_uses": coupon.max_uses,
        "used_count": coupon.used_count,
        "remaining_uses": coupon.remaining_uses,
        "is_active": coupon.is_active,
        "is_expired": coupon.is_expired(),
        "usages": [
            {
                "registration_id": usage.registration_id,
                "used_at": usage.used_at,
                "redeemed_at": usage.redeemed_at,
                "user_name": usage.user_name,
                "user_email": usage.user_email,
                "user_mobile": usage.user_mobile,
            }
            for usage in usages
        ],
        "copy_events": crud.count_copy_events(db, coupon.id),
        "last_copied_at": last_copy.timestamp if last_copy else None,
    }


def get_registrations_by_date(
    db: Session,
    form_id: Optional[UUID] = None,
    days: int = 30
) -> List[Dict[str, Any]]:
    """Daily registration counts for the last `days` days, oldest first."""
    since = utcnow() - timedelta(days=days)
    day = func.date(Registration.created_at)
    stmt = (
        select(day.label("day"), func.count(Registration.id).label("count"))
        .where(Registration.created_at >= since)
        .group_by(day)
        .order_by(day)
    )
    if form_id is not None:
        stmt = stmt.where(Registration.form_id == form_id)
    return [{"date": str(row.day), "count": row.count} for row in db.execute(stmt)]
