"""Coupon redemption and copy/view tracking.

Redemption is append-once per (coupon, registration). Copy tracking is
telemetry: it must never fail the caller, so store errors are logged and
dropped.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.database import crud
from src.database.models import utcnow, as_utc_naive
from src.exceptions import ConflictError, NotFoundError, StoreError, TelemetryError


logger = logging.getLogger(__name__)


COPY_EVENT_FIELDS = (
    "source", "ip_address", "user_agent", "form_id", "form_slug", "form_name",
    "linkedin_url", "view_time", "registration_time", "from_success_banner", "form_data",
)


class UsageTracker:
    """Records what happens to coupons after they are handed out."""

    def record_redemption(
        self,
        db: Session,
        code: str,
        registration_id: UUID,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Record that the registrant actually used the coupon.

        Returns True if this call recorded the redemption and False if it had
        already been recorded. A coupon that was never allocated to the
        registration takes a use here, subject to its usage limit.
        """
        metadata = dict(metadata or {})
        discount_applied = metadata.pop("discount_applied", None)
        now = utcnow()

        try:
            coupon = crud.get_coupon_by_code(db, code)
            if coupon is None:
                raise NotFoundError("Coupon not found", field="code")

            usage = crud.get_coupon_usage(db, coupon.id, registration_id)
            if usage is not None:
                if usage.redeemed_at is not None:
                    logger.debug("Coupon %s already redeemed by %s", coupon.code, registration_id)
                    return False
                recorded = crud.mark_usage_redeemed(
                    db, usage.id, registration_id, now,
                    discount_applied=discount_applied,
                    redemption_data=metadata or None
                )
            else:
                recorded = self._redeem_unallocated(
                    db, coupon.id, coupon.code, registration_id, now, discount_applied, metadata
                )
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to record redemption of %s", code)
            raise StoreError("Failed to record coupon usage") from e

        if recorded:
            logger.info("Recorded redemption of coupon %s by registration %s", crud.normalize_code(code), registration_id)
        return recorded

    def _redeem_unallocated(
        self,
        db: Session,
        coupon_id: int,
        code: str,
        registration_id: UUID,
        now: datetime,
        discount_applied: Optional[float],
        metadata: Dict[str, Any]
    ) -> bool:
        registration = crud.get_registration_by_id(db, registration_id)
        try:
            reserved = crud.reserve_coupon(
                db,
                coupon_id,
                registration_id,
                form_id=registration.form_id if registration else None,
                user_name=registration.name if registration else None,
                user_email=registration.email if registration else None,
                user_mobile=registration.mobile if registration else None,
                redeemed_at=now,
                discount_applied=discount_applied,
                redemption_data=metadata or None
            )
        except IntegrityError:
            # A concurrent call recorded the same (coupon, registration) pair
            return False

        if not reserved:
            raise ConflictError(f"Coupon {code} is inactive, expired or fully used", field="code")
        return True

    def record_copy_event(self, db: Session, code: str, event: Optional[Dict[str, Any]] = None) -> bool:
        """Append a copy/view event for one coupon. Never raises."""
        try:
            coupon_id = crud.get_coupon_id_by_code(db, code)
            if coupon_id is None:
                logger.warning("Copy event for unknown coupon %s ignored", code)
                return False
            return self._persist_events(db, [coupon_id], event) == 1
        except (TelemetryError, SQLAlchemyError) as e:
            db.rollback()
            logger.warning("Dropped copy event for coupon %s: %s", code, e)
            return False

    def record_bulk_copy_events(
        self,
        db: Session,
        codes: List[str],
        event: Optional[Dict[str, Any]] = None
    ) -> int:
        """Append the same copy event to many coupons. Returns how many were recorded."""
        try:
            coupon_ids = crud.get_coupon_ids_by_codes(db, codes)
            if len(coupon_ids) < len({crud.normalize_code(c) for c in codes if crud.normalize_code(c)}):
                logger.warning("Bulk copy event referenced unknown coupons; recording %d", len(coupon_ids))
            if not coupon_ids:
                return 0
            return self._persist_events(db, coupon_ids, event)
        except (TelemetryError, SQLAlchemyError) as e:
            db.rollback()
            logger.warning("Dropped bulk copy event for %d coupons: %s", len(codes), e)
            return 0

    def _persist_events(self, db: Session, coupon_ids: List[int], event: Optional[Dict[str, Any]]) -> int:
        fields = {key: value for key, value in (event or {}).items() if key in COPY_EVENT_FIELDS and value is not None}
        for key in ("view_time", "registration_time"):
            if isinstance(fields.get(key), datetime):
                fields[key] = as_utc_naive(fields[key])
        try:
            return crud.add_copy_events(db, coupon_ids, **fields)
        except SQLAlchemyError as e:
            db.rollback()
            raise TelemetryError(f"could not store copy event: {e}") from e
