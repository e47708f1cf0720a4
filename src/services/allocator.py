"""Coupon allocation.

One allocator serves every coupon strategy. A strategy is an eligibility
predicate (form pool, general pool, one exact code); the allocator walks the
predicates in order and reserves the oldest eligible coupon of the first pool
that still has one.

Reservation goes through `crud.reserve_coupon`, a conditional UPDATE on
`used_count < max_uses`, so two concurrent requests can never take the same
use of a coupon. Losing that race simply moves on to the next candidate.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import settings
from src.database import crud
from src.database.models import Coupon
from src.exceptions import StoreError


logger = logging.getLogger(__name__)


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class Requester:
    """Minimal identity of the registrant, copied into the usage entry."""
    email: Optional[str] = None
    mobile: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class Allocated:
    """A coupon use was reserved for the caller."""
    code: str
    coupon_id: int
    linkedin_url: Optional[str] = None
    discount: Optional[float] = None
    pool: str = "form"


@dataclass(frozen=True)
class Exhausted:
    """No eligible coupon was left in any pool."""
    form_id: Optional[UUID] = None


AllocationResult = Union[Allocated, Exhausted]


# ============================================================================
# Eligibility Predicates
# ============================================================================

class EligibilityPredicate:
    """Selects which coupons a pool consists of."""

    name = "pool"

    def clause(self):
        raise NotImplementedError


class FormPool(EligibilityPredicate):
    """Coupons bound to one form."""

    name = "form"

    def __init__(self, form_id: UUID):
        self.form_id = form_id

    def clause(self):
        return Coupon.form_id == self.form_id


class GeneralPool(EligibilityPredicate):
    """Coupons not bound to any form."""

    name = "general"

    def clause(self):
        return Coupon.form_id.is_(None)


class ExactCode(EligibilityPredicate):
    """A single known coupon."""

    name = "exact"

    def __init__(self, code: str):
        self.code = crud.normalize_code(code)

    def clause(self):
        return Coupon.code == self.code


def default_predicates(form_id: Optional[UUID]) -> List[EligibilityPredicate]:
    """Form-specific coupons first, then the general pool."""
    if form_id is None:
        return [GeneralPool()]
    return [FormPool(form_id), GeneralPool()]


# ============================================================================
# Allocator
# ============================================================================

class CouponAllocator:
    """Reserves coupons for registration attempts."""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or settings.allocation_batch_size

    def allocate(
        self,
        db: Session,
        form_id: Optional[UUID],
        requester: Requester,
        registration_id: UUID,
        predicates: Optional[Sequence[EligibilityPredicate]] = None
    ) -> AllocationResult:
        """
        Reserve one coupon use for `registration_id`.

        The reservation is committed before this returns; undo it with
        `release`. Raises StoreError if the database fails.
        """
        predicates = list(predicates) if predicates else default_predicates(form_id)
        try:
            for predicate in predicates:
                allocated = self._allocate_from(db, predicate, form_id, requester, registration_id)
                if allocated is not None:
                    logger.info(
                        "Allocated coupon %s from %s pool to registration %s",
                        allocated.code, predicate.name, registration_id
                    )
                    return allocated
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Coupon allocation failed for form %s", form_id)
            raise StoreError("Failed to allocate a coupon, please try again") from e

        logger.info("No eligible coupon left for form %s", form_id)
        return Exhausted(form_id=form_id)

    def _allocate_from(
        self,
        db: Session,
        predicate: EligibilityPredicate,
        form_id: Optional[UUID],
        requester: Requester,
        registration_id: UUID
    ) -> Optional[Allocated]:
        # Every lost race means another request consumed a use, so the
        # candidate query eventually returns nothing.
        while True:
            candidates = crud.find_eligible_coupon_ids(db, predicate.clause(), limit=self.batch_size)
            if not candidates:
                return None

            for coupon_id in candidates:
                reserved = crud.reserve_coupon(
                    db,
                    coupon_id,
                    registration_id,
                    form_id=form_id,
                    user_name=requester.name,
                    user_email=requester.email,
                    user_mobile=requester.mobile
                )
                if not reserved:
                    logger.debug("Coupon %s taken concurrently, trying next candidate", coupon_id)
                    continue

                coupon = db.get(Coupon, coupon_id)
                return Allocated(
                    code=coupon.code,
                    coupon_id=coupon.id,
                    linkedin_url=coupon.linkedin_url,
                    discount=float(coupon.discount) if coupon.discount is not None else None,
                    pool=predicate.name
                )

    def release(self, db: Session, code: str, registration_id: UUID) -> bool:
        """
        Return a reserved use of `code` taken by `registration_id`.

        Idempotent: releasing twice, or releasing something never allocated,
        returns False and changes nothing.
        """
        try:
            coupon_id = crud.get_coupon_id_by_code(db, code)
            if coupon_id is None:
                logger.warning("Release requested for unknown coupon %s", code)
                return False
            released = crud.release_coupon(db, coupon_id, registration_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to release coupon %s for registration %s", code, registration_id)
            raise StoreError("Failed to release coupon") from e

        if released:
            logger.info("Released coupon %s from registration %s", code, registration_id)
        else:
            logger.debug("Nothing to release for coupon %s and registration %s", code, registration_id)
        return released
