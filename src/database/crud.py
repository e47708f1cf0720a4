"""CRUD (Create, Read, Update, Delete) operations for database models.

This module provides reusable database operations for each model. The
"Coupon Store" section owns every write to coupon counters: usage counts are
only ever changed by the conditional UPDATE statements in `reserve_coupon`
and `release_coupon`, never by read-modify-write in Python.
`create_reserved_coupon` inserts a coupon together with its single use.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime
from uuid import UUID
from sqlalchemy.orm import Session
from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.exc import IntegrityError

from .models import (
    User, Form, Registration, Coupon, CouponUsage, CouponCopyEvent, CouponUpload, utcnow
)


# ============================================================================
# User CRUD Operations
# ============================================================================

def create_user(
    db: Session,
    email: str,
    password_hash: str,
    full_name: Optional[str] = None,
    is_admin: bool = False
) -> User:
    """Create a new user."""
    user = User(
        email=email,
        password_hash=password_hash,
        full_name=full_name,
        is_admin=is_admin
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_id(db: Session, user_id: UUID) -> Optional[User]:
    """Get user by ID."""
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get user by email."""
    stmt = select(User).where(User.email == email)
    return db.scalar(stmt)


def update_user_last_login(db: Session, user_id: UUID) -> None:
    """Update user's last login timestamp."""
    user = db.get(User, user_id)
    if user:
        user.last_login = utcnow()
        db.commit()


# ============================================================================
# Form CRUD Operations
# ============================================================================

def create_form(
    db: Session,
    slug: str,
    activation: datetime,
    deactivation: datetime,
    **kwargs
) -> Form:
    """Create a new form."""
    form = Form(
        slug=slug,
        activation=activation,
        deactivation=deactivation,
        **kwargs
    )
    db.add(form)
    db.commit()
    db.refresh(form)
    return form


def get_form_by_id(db: Session, form_id: UUID) -> Optional[Form]:
    """Get form by ID."""
    return db.get(Form, form_id)


def get_form_by_slug(db: Session, slug: str) -> Optional[Form]:
    """Get form by slug."""
    stmt = select(Form).where(Form.slug == slug)
    return db.scalar(stmt)


def get_all_forms(
    db: Session,
    limit: int = 100,
    offset: int = 0,
    include_inactive: bool = True
) -> List[Form]:
    """Get all forms, newest first."""
    stmt = select(Form)
    if not include_inactive:
        stmt = stmt.where(Form.is_active == True)
    stmt = stmt.order_by(Form.created_at.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def update_form(
    db: Session,
    form_id: UUID,
    **kwargs
) -> Optional[Form]:
    """Update form settings."""
    form = db.get(Form, form_id)
    if form:
        for key, value in kwargs.items():
            if hasattr(form, key) and key not in ['id', 'created_at']:
                setattr(form, key, value)
        db.commit()
        db.refresh(form)
    return form


# ============================================================================
# Registration CRUD Operations
# ============================================================================

def create_registration(db: Session, **fields) -> Registration:
    """
    Insert a registration.

    Raises IntegrityError when the (email, form) or (mobile, form) unique
    constraint is violated; the session is left for the caller to roll back.
    """
    registration = Registration(**fields)
    db.add(registration)
    db.commit()
    db.refresh(registration)
    return registration


def get_registration_by_id(db: Session, registration_id: UUID) -> Optional[Registration]:
    """Get registration by ID."""
    return db.get(Registration, registration_id)


def find_existing_registration(
    db: Session,
    email: str,
    mobile: str,
    form_id: Optional[UUID] = None
) -> Optional[Registration]:
    """
    Find a registration matching the email or the mobile number.

    Scoped to one form when `form_id` is given, otherwise across all forms.
    """
    stmt = select(Registration).where(
        or_(Registration.email == email, Registration.mobile == mobile)
    )
    if form_id is not None:
        stmt = stmt.where(Registration.form_id == form_id)
    stmt = stmt.order_by(Registration.created_at).limit(1)
    return db.scalar(stmt)


def get_registration_by_email(
    db: Session,
    email: str,
    form_id: Optional[UUID] = None
) -> Optional[Registration]:
    """Get a registration by email, optionally limited to one form."""
    stmt = select(Registration).where(Registration.email == email)
    if form_id is not None:
        stmt = stmt.where(Registration.form_id == form_id)
    return db.scalar(stmt.order_by(Registration.created_at).limit(1))


def get_registration_by_mobile(
    db: Session,
    mobile: str,
    form_id: Optional[UUID] = None
) -> Optional[Registration]:
    """Get a registration by mobile number, optionally limited to one form."""
    stmt = select(Registration).where(Registration.mobile == mobile)
    if form_id is not None:
        stmt = stmt.where(Registration.form_id == form_id)
    return db.scalar(stmt.order_by(Registration.created_at).limit(1))


def count_registrations(db: Session, form_id: Optional[UUID] = None) -> int:
    """Count registrations, optionally for one form."""
    stmt = select(func.count(Registration.id))
    if form_id is not None:
        stmt = stmt.where(Registration.form_id == form_id)
    return db.scalar(stmt) or 0


def get_form_registrations(
    db: Session,
    form_id: UUID,
    limit: int = 100,
    offset: int = 0
) -> List[Registration]:
    """Get registrations for a form, newest first."""
    stmt = (
        select(Registration)
        .where(Registration.form_id == form_id)
        .order_by(Registration.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.scalars(stmt))


def _mark_registration_coupon_used(db: Session, registration_id: UUID, used_at: datetime) -> None:
    """Flag the registration's coupon as redeemed (no commit)."""
    db.execute(
        update(Registration)
        .where(
            Registration.id == registration_id,
            Registration.coupon_used == False
        )
        .values(coupon_used=True, coupon_used_at=used_at)
        .execution_options(synchronize_session=False)
    )


# ============================================================================
# Coupon Store Operations
# ============================================================================

def normalize_code(code: str) -> str:
    """Coupon codes are stored trimmed and uppercase."""
    return (code or "").strip().upper()


def create_coupon(
    db: Session,
    code: str,
    form_id: Optional[UUID] = None,
    max_uses: int = 1,
    **kwargs
) -> Coupon:
    """
    Create a single coupon.

    Raises IntegrityError if the code already exists.
    """
    coupon = Coupon(
        code=normalize_code(code),
        form_id=form_id,
        max_uses=max_uses,
        used_count=0,
        **kwargs
    )
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    return coupon


def create_reserved_coupon(
    db: Session,
    code: str,
    registration_id: UUID,
    form_id: Optional[UUID] = None,
    user_name: Optional[str] = None,
    user_email: Optional[str] = None,
    user_mobile: Optional[str] = None,
    **kwargs
) -> Coupon:
    """
    Create a single-use coupon whose only use is already taken by `registration_id`.

    The coupon and its usage row are committed together, so the coupon is
    never visible as available. Raises IntegrityError if the code already exists.
    """
    now = utcnow()
    try:
        coupon = Coupon(
            code=normalize_code(code),
            form_id=form_id,
            max_uses=1,
            used_count=1,
            **kwargs
        )
        db.add(coupon)
        db.flush()
        db.add(CouponUsage(
            coupon_id=coupon.id,
            registration_id=registration_id,
            form_id=form_id,
            used_at=now,
            user_name=user_name,
            user_email=user_email,
            user_mobile=user_mobile
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(coupon)
    return coupon


def get_coupon_by_code(db: Session, code: str) -> Optional[Coupon]:
    """Get a coupon by its (normalized) code."""
    stmt = select(Coupon).where(Coupon.code == normalize_code(code))
    return db.scalar(stmt)


def get_coupon_id_by_code(db: Session, code: str) -> Optional[int]:
    """Get only a coupon's primary key by code."""
    stmt = select(Coupon.id).where(Coupon.code == normalize_code(code))
    return db.scalar(stmt)


def get_coupons(
    db: Session,
    form_id: Optional[UUID] = None,
    upload_id: Optional[UUID] = None,
    general_only: bool = False,
    available_only: bool = False,
    limit: int = 100,
    offset: int = 0
) -> List[Coupon]:
    """List coupons in insertion order with optional filters."""
    stmt = select(Coupon)
    if general_only:
        stmt = stmt.where(Coupon.form_id.is_(None))
    elif form_id is not None:
        stmt = stmt.where(Coupon.form_id == form_id)
    if upload_id is not None:
        stmt = stmt.where(Coupon.upload_id == upload_id)
    if available_only:
        stmt = stmt.where(eligible_coupon_clause())
    stmt = stmt.order_by(Coupon.id).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def set_coupon_active(db: Session, code: str, is_active: bool) -> Optional[Coupon]:
    """Activate or deactivate a coupon."""
    coupon = get_coupon_by_code(db, code)
    if coupon:
        coupon.is_active = is_active
        db.commit()
        db.refresh(coupon)
    return coupon


def count_form_coupons(db: Session, form_id: UUID) -> int:
    """Count coupons provisioned for a form."""
    return db.scalar(select(func.count(Coupon.id)).where(Coupon.form_id == form_id)) or 0


def eligible_coupon_clause(now: Optional[datetime] = None):
    """SQL predicate for coupons that may still be handed out."""
    now = now or utcnow()
    return and_(
        Coupon.is_active == True,
        Coupon.used_count < Coupon.max_uses,
        or_(Coupon.expiry_date.is_(None), Coupon.expiry_date > now)
    )


def find_eligible_coupon_ids(
    db: Session,
    predicate,
    limit: int = 10
) -> List[int]:
    """
    Return ids of eligible coupons matching `predicate`, oldest first.

    The result is only a candidate list; another request may take any of
    these before `reserve_coupon` runs.
    """
    stmt = (
        select(Coupon.id)
        .where(eligible_coupon_clause(), predicate)
        .order_by(Coupon.id)
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def reserve_coupon(
    db: Session,
    coupon_id: int,
    registration_id: UUID,
    form_id: Optional[UUID] = None,
    user_name: Optional[str] = None,
    user_email: Optional[str] = None,
    user_mobile: Optional[str] = None,
    redeemed_at: Optional[datetime] = None,
    discount_applied: Optional[float] = None,
    redemption_data: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Atomically take one use of a coupon for a registration attempt.

    Increments `used_count` with a conditional UPDATE (the match predicate
    re-checks `used_count < max_uses`, active and not expired) and appends the
    usage row in the same transaction. Returns False without side effects when
    the coupon is no longer eligible, i.e. a concurrent request won.
    """
    now = utcnow()
    try:
        result = db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, eligible_coupon_clause(now))
            .values(used_count=Coupon.used_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False

        db.add(CouponUsage(
            coupon_id=coupon_id,
            registration_id=registration_id,
            form_id=form_id,
            used_at=now,
            redeemed_at=redeemed_at,
            discount_applied=discount_applied,
            user_name=user_name,
            user_email=user_email,
            user_mobile=user_mobile,
            redemption_data=redemption_data
        ))
        if redeemed_at is not None:
            _mark_registration_coupon_used(db, registration_id, redeemed_at)
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise


def release_coupon(db: Session, coupon_id: int, registration_id: UUID) -> bool:
    """
    Undo a reservation made for `registration_id`.

    Removes the usage row and decrements `used_count` in one transaction.
    Returns False, changing nothing, if there is no such reservation.
    """
    try:
        deleted = db.execute(
            delete(CouponUsage)
            .where(
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.registration_id == registration_id
            )
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != 1:
            db.rollback()
            return False

        db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise


def get_coupon_usage(db: Session, coupon_id: int, registration_id: UUID) -> Optional[CouponUsage]:
    """Get the usage entry of a coupon for one registration."""
    stmt = select(CouponUsage).where(
        CouponUsage.coupon_id == coupon_id,
        CouponUsage.registration_id == registration_id
    )
    return db.scalar(stmt)


def get_coupon_usages(db: Session, coupon_id: int) -> List[CouponUsage]:
    """Get all usage entries of a coupon in the order they were recorded."""
    stmt = select(CouponUsage).where(CouponUsage.coupon_id == coupon_id).order_by(CouponUsage.id)
    return list(db.scalars(stmt))


def mark_usage_redeemed(
    db: Session,
    usage_id: int,
    registration_id: UUID,
    redeemed_at: datetime,
    discount_applied: Optional[float] = None,
    redemption_data: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Set `redeemed_at` on a usage entry unless it is already set.

    Returns True only for the call that actually recorded the redemption.
    """
    values = {"redeemed_at": redeemed_at}
    if discount_applied is not None:
        values["discount_applied"] = discount_applied
    if redemption_data:
        values["redemption_data"] = redemption_data
    try:
        result = db.execute(
            update(CouponUsage)
            .where(CouponUsage.id == usage_id, CouponUsage.redeemed_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False
        _mark_registration_coupon_used(db, registration_id, redeemed_at)
        db.commit()
        return True
    except Exception:
        db.rollback()
        raise


@dataclass
class BulkInsertReport:
    """Outcome of a bulk coupon insert."""
    added: int = 0
    duplicates: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    coupon_ids: List[int] = field(default_factory=list)


COUPON_FIELDS = (
    "description", "discount", "is_percentage", "max_uses",
    "expiry_date", "linkedin_url", "extra_data"
)


def existing_coupon_codes(db: Session, codes: List[str], chunk_size: int = 500) -> set:
    """Return which of the given normalized codes are already stored."""
    existing = set()
    for start in range(0, len(codes), chunk_size):
        chunk = codes[start:start + chunk_size]
        existing.update(db.scalars(select(Coupon.code).where(Coupon.code.in_(chunk))))
    return existing


def bulk_insert_coupons(
    db: Session,
    candidates: Iterable[Dict[str, Any]],
    upload_id: Optional[UUID] = None,
    form_id: Optional[UUID] = None,
    created_by_id: Optional[UUID] = None,
    max_attempts: int = 3
) -> BulkInsertReport:
    """
    Insert candidate coupons, skipping codes that already exist.

    Each candidate is a dict with at least `code` (and optionally `line`,
    `form_id` and the columns in COUPON_FIELDS). Duplicates within the batch
    and against the store are counted, not inserted. If a concurrent insert
    creates one of the codes in between, the pass is retried.
    """
    report = BulkInsertReport()
    rows = []
    seen = set()
    for candidate in candidates:
        code = normalize_code(candidate.get("code"))
        if not code:
            report.errors.append({"line": candidate.get("line"), "message": "Missing coupon code"})
            continue
        if code in seen:
            report.duplicates += 1
            continue
        seen.add(code)
        rows.append((code, candidate))

    if not rows:
        return report

    last_error = None
    for _ in range(max_attempts):
        existing = existing_coupon_codes(db, [code for code, _ in rows])
        coupons = []
        for code, candidate in rows:
            if code in existing:
                continue
            values = {key: candidate[key] for key in COUPON_FIELDS if candidate.get(key) is not None}
            coupons.append(Coupon(
                code=code,
                form_id=candidate.get("form_id") or form_id,
                upload_id=upload_id,
                created_by_id=created_by_id,
                used_count=0,
                **values
            ))

        db.add_all(coupons)
        try:
            db.flush()
            coupon_ids = [coupon.id for coupon in coupons]
            db.commit()
        except IntegrityError as e:
            db.rollback()
            last_error = e
            continue

        report.added = len(coupons)
        report.duplicates += len(rows) - len(coupons)
        report.coupon_ids = coupon_ids
        return report

    raise last_error


# ============================================================================
# Coupon Copy Event Operations
# ============================================================================

def add_copy_events(
    db: Session,
    coupon_ids: List[int],
    **fields
) -> int:
    """Append one copy event per coupon id with the same event fields."""
    events = [CouponCopyEvent(coupon_id=coupon_id, **fields) for coupon_id in coupon_ids]
    db.add_all(events)
    db.commit()
    return len(events)


def get_coupon_ids_by_codes(db: Session, codes: List[str]) -> List[int]:
    """Resolve many codes to coupon ids; unknown codes are dropped."""
    normalized = list({normalize_code(code) for code in codes if normalize_code(code)})
    if not normalized:
        return []
    stmt = select(Coupon.id).where(Coupon.code.in_(normalized)).order_by(Coupon.id)
    return list(db.scalars(stmt))


def count_copy_events(db: Session, coupon_id: int) -> int:
    """Count copy events recorded for a coupon."""
    stmt = select(func.count(CouponCopyEvent.id)).where(CouponCopyEvent.coupon_id == coupon_id)
    return db.scalar(stmt) or 0


def get_last_copy_event(db: Session, coupon_id: int) -> Optional[CouponCopyEvent]:
    """Get the most recent copy event for a coupon."""
    stmt = (
        select(CouponCopyEvent)
        .where(CouponCopyEvent.coupon_id == coupon_id)
        .order_by(CouponCopyEvent.id.desc())
        .limit(1)
    )
    return db.scalar(stmt)


# ============================================================================
# Coupon Upload Operations
# ============================================================================

def create_coupon_upload(
    db: Session,
    file_name: str,
    mime_type: Optional[str] = None,
    file_size: Optional[int] = None,
    uploaded_by_id: Optional[UUID] = None,
    form_id: Optional[UUID] = None
) -> CouponUpload:
    """Create an upload batch record in the processing state."""
    upload = CouponUpload(
        file_name=file_name,
        mime_type=mime_type,
        file_size=file_size,
        uploaded_by_id=uploaded_by_id,
        form_id=form_id,
        status="processing"
    )
    db.add(upload)
    db.commit()
    db.refresh(upload)
    return upload


def finish_coupon_upload(
    db: Session,
    upload_id: UUID,
    coupons_added: int,
    duplicates_skipped: int,
    errors: List[Dict[str, Any]],
    status: str = "completed"
) -> Optional[CouponUpload]:
    """Record the outcome of an upload batch."""
    upload = db.get(CouponUpload, upload_id)
    if upload:
        upload.coupons_added = coupons_added
        upload.duplicates_skipped = duplicates_skipped
        upload.errors = errors
        upload.status = status
        db.commit()
        db.refresh(upload)
    return upload


def get_coupon_upload(db: Session, upload_id: UUID) -> Optional[CouponUpload]:
    """Get an upload batch by ID."""
    return db.get(CouponUpload, upload_id)


def get_all_coupon_uploads(
    db: Session,
    limit: int = 100,
    offset: int = 0
) -> List[CouponUpload]:
    """Get upload batches, newest first."""
    stmt = select(CouponUpload).order_by(CouponUpload.created_at.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def count_used_coupons_in_upload(db: Session, upload_id: UUID) -> int:
    """Count coupons from an upload batch that have been used at least once."""
    stmt = select(func.count(Coupon.id)).where(
        Coupon.upload_id == upload_id,
        Coupon.used_count > 0
    )
    return db.scalar(stmt) or 0


def delete_coupon_upload(db: Session, upload_id: UUID) -> int:
    """
    Delete an upload batch and every coupon it created.

    Usage and copy events of those coupons go with them. Returns the number of
    coupons deleted. Registrations keep their copy of the code.
    """
    coupon_ids = select(Coupon.id).where(Coupon.upload_id == upload_id)
    db.execute(
        delete(CouponUsage)
        .where(CouponUsage.coupon_id.in_(coupon_ids))
        .execution_options(synchronize_session=False)
    )
    db.execute(
        delete(CouponCopyEvent)
        .where(CouponCopyEvent.coupon_id.in_(coupon_ids))
        .execution_options(synchronize_session=False)
    )
    deleted = db.execute(
        delete(Coupon)
        .where(Coupon.upload_id == upload_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.execute(
        delete(CouponUpload)
        .where(CouponUpload.id == upload_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return deleted
