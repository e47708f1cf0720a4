#!/usr/bin/env python3
"""
Audit coupon usage counters.

Reports two kinds of drift:
- coupons whose used_count differs from the number of their usage entries
- reservations left behind by registrations that were never stored

With --fix, counters are reset to the real number of usages and leftover
reservations are released.

Run it periodically (e.g., nightly) via cron:
    0 3 * * * cd /path/to/couponroster && python -m src.tasks.check_coupons
"""

import argparse
import logging
import sys
from datetime import timedelta
from typing import List, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database.session import SessionLocal
from ..database.models import Coupon, CouponUsage, Registration, utcnow
from ..database import crud
from ..logging_config import setup_logging


logger = logging.getLogger(__name__)


def find_mismatched_coupons(db: Session) -> List[Tuple[int, str, int, int]]:
    """Return (id, code, used_count, usage_count) for coupons whose counter drifted."""
    usage_counts = (
        select(CouponUsage.coupon_id, func.count(CouponUsage.id).label("usages"))
        .group_by(CouponUsage.coupon_id)
        .subquery()
    )
    usages = func.coalesce(usage_counts.c.usages, 0)
    stmt = (
        select(Coupon.id, Coupon.code, Coupon.used_count, usages)
        .outerjoin(usage_counts, usage_counts.c.coupon_id == Coupon.id)
        .where(Coupon.used_count != usages)
        .order_by(Coupon.id)
    )
    return [tuple(row) for row in db.execute(stmt)]


def fix_coupon_counts(db: Session, mismatches: List[Tuple[int, str, int, int]]) -> int:
    """Reset used_count to the number of usage entries. Returns coupons fixed."""
    for coupon_id, _code, _used, usages in mismatches:
        db.execute(update(Coupon).where(Coupon.id == coupon_id).values(used_count=usages))
    db.commit()
    return len(mismatches)


def find_orphaned_reservations(db: Session, older_than_minutes: int = 15) -> List[Tuple[int, str, UUID]]:
    """
    Return (coupon_id, code, registration_id) for unredeemed usages whose
    registration does not exist and that are older than the grace period.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    stmt = (
        select(CouponUsage.coupon_id, Coupon.code, CouponUsage.registration_id)
        .join(Coupon, Coupon.id == CouponUsage.coupon_id)
        .outerjoin(Registration, Registration.id == CouponUsage.registration_id)
        .where(
            Registration.id.is_(None),
            CouponUsage.redeemed_at.is_(None),
            CouponUsage.used_at < cutoff
        )
        .order_by(CouponUsage.id)
    )
    return [tuple(row) for row in db.execute(stmt)]


def release_orphans(db: Session, orphans: List[Tuple[int, str, UUID]]) -> int:
    """Release leftover reservations. Returns how many were released."""
    return sum(
        1 for coupon_id, _code, registration_id in orphans
        if crud.release_coupon(db, coupon_id, registration_id)
    )


def main(argv=None):
    """Audit coupon counters and reservations."""
    parser = argparse.ArgumentParser(description="Audit coupon used_count against usage entries")
    parser.add_argument("--fix", action="store_true", help="reset drifted counters and release orphans")
    parser.add_argument("--grace-minutes", type=int, default=15,
                        help="ignore reservations younger than this")
    args = parser.parse_args(argv)

    setup_logging()
    db = SessionLocal()
    try:
        orphans = find_orphaned_reservations(db, args.grace_minutes)
        for _coupon_id, code, registration_id in orphans:
            logger.warning("Coupon %s is reserved for missing registration %s", code, registration_id)

        if orphans and args.fix:
            released = release_orphans(db, orphans)
            logger.info("Released %d orphaned reservations", released)

        mismatches = find_mismatched_coupons(db)
        for _coupon_id, code, used, usages in mismatches:
            logger.warning("Coupon %s: used_count=%d but %d usage entries", code, used, usages)

        if mismatches and args.fix:
            fixed = fix_coupon_counts(db, mismatches)
            logger.info("Reset %d coupon counters", fixed)

        if not orphans and not mismatches:
            logger.info("All coupon counters match their usage entries")
            return 0
        return 0 if args.fix else 1

    except SQLAlchemyError:
        db.rollback()
        logger.exception("Coupon audit failed")
        return 2

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
