"""Registration orchestration.

A submission moves through validation, duplicate detection, coupon allocation
and persistence. If persisting fails after a coupon was reserved, the
reservation is released before the error is reported, so a coupon is never
held by a registration that does not exist.
"""

import logging
import re
import secrets
import string
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import settings
from src.database import crud
from src.database.models import Form, Registration
from src.exceptions import NotFoundError, StoreError, ValidationError
from src.services.allocator import (
    Allocated, CouponAllocator, Exhausted, Requester
)
from src.services.forms import FormRegistry
from src.services.usage import UsageTracker


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[\w.+-]+@([\w-]+\.)+[\w-]{2,}$")


class RegistrationState(str, Enum):
    VALIDATING = "validating"
    CHECKING_DUPLICATE = "checking_duplicate"
    ALLOCATING_COUPON = "allocating_coupon"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    LIMIT_REACHED = "registration_limit_reached"


@dataclass
class RegistrationSubmission:
    """A registrant's form data as received from the client."""
    email: str
    mobile: str
    form_slug: str
    name: Optional[str] = None
    college: Optional[str] = None
    register_number: Optional[str] = None
    yop: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    extra_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RegistrationOutcome:
    """Terminal state of one submission."""
    state: RegistrationState
    registration: Optional[Registration] = None
    coupon_code: Optional[str] = None
    linkedin_url: Optional[str] = None
    message: str = ""

    @property
    def created(self) -> bool:
        return self.state == RegistrationState.COMPLETED


def redemption_url(code: Optional[str], linkedin_url: Optional[str] = None) -> Optional[str]:
    """The coupon's own redemption link, or one built from the configured template."""
    if linkedin_url:
        return linkedin_url
    if not code or not settings.redeem_url_template:
        return None
    prefix = settings.redeem_url_strip_prefix
    if prefix and code.upper().startswith(prefix.upper()):
        code = code[len(prefix):]
    return settings.redeem_url_template.format(code=code)


def generate_coupon_code(prefix: Optional[str] = None, length: Optional[int] = None) -> str:
    """Random code such as THANKS-7KQ2M9XA."""
    prefix = settings.generated_coupon_prefix if prefix is None else prefix
    length = length or settings.generated_coupon_length
    alphabet = string.ascii_uppercase + string.digits
    return prefix + "".join(secrets.choice(alphabet) for _ in range(length))


def validate_contact(email: Optional[str], mobile: Optional[str]) -> tuple:
    """Normalize and validate email and mobile; returns (email, mobile)."""
    email = (email or "").strip().lower()
    mobile = (mobile or "").strip()
    if not email:
        raise ValidationError("Email is required", field="email")
    if not mobile:
        raise ValidationError("Mobile is required", field="mobile")
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email address", field="email")
    if not re.match(settings.mobile_pattern, mobile):
        raise ValidationError("Please provide a valid 10-digit mobile number", field="mobile")
    return email, mobile


class RegistrationService:
    """Runs registration submissions end to end."""

    def __init__(
        self,
        allocator: Optional[CouponAllocator] = None,
        forms: Optional[FormRegistry] = None,
        tracker: Optional[UsageTracker] = None,
        uniqueness_scope: Optional[str] = None
    ):
        self.allocator = allocator or CouponAllocator()
        self.forms = forms or FormRegistry()
        self.tracker = tracker or UsageTracker()
        self.uniqueness_scope = uniqueness_scope or settings.registration_uniqueness_scope

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, db: Session, submission: RegistrationSubmission) -> RegistrationOutcome:
        """
        Register a person for a form and hand out a coupon.

        Returns a COMPLETED, DUPLICATE or LIMIT_REACHED outcome. Raises
        ValidationError / NotFoundError for bad input and StoreError when the
        database fails.
        """
        state = RegistrationState.VALIDATING
        if not (submission.form_slug or "").strip():
            raise ValidationError("Form slug is required", field="formSlug")
        email, mobile = validate_contact(submission.email, submission.mobile)

        try:
            form = self.forms.get_open_form(db, submission.form_slug.strip())

            state = RegistrationState.CHECKING_DUPLICATE
            existing = self._find_duplicate(db, email, mobile, form)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Registration lookup failed in state %s", state.value)
            raise StoreError("Failed to submit registration") from e

        if existing is not None:
            logger.info("Duplicate registration for form %s (existing %s)", form.slug, existing.id)
            return self._duplicate_outcome(existing)

        state = RegistrationState.ALLOCATING_COUPON
        registration_id = uuid.uuid4()
        requester = Requester(email=email, mobile=mobile, name=submission.name)
        allocated = self._allocate(db, form, requester, registration_id)
        if allocated is None and form.coupon_required:
            logger.info("Form %s has no coupons left; registration refused", form.slug)
            return RegistrationOutcome(
                state=RegistrationState.LIMIT_REACHED,
                message="Registration limit for this form has been reached"
            )

        state = RegistrationState.PERSISTING
        fields = self._registration_fields(submission, form, email, mobile)
        fields["id"] = registration_id
        if allocated is not None:
            fields["coupon_code"] = allocated.code
            fields["linkedin_url"] = allocated.linkedin_url

        try:
            registration = crud.create_registration(db, **fields)
        except IntegrityError as e:
            db.rollback()
            self._compensate(db, allocated, registration_id)
            try:
                existing = self._find_duplicate(db, email, mobile, form)
            except SQLAlchemyError as lookup_error:
                db.rollback()
                logger.exception("Duplicate lookup failed after a rejected registration insert")
                raise StoreError("Failed to submit registration") from lookup_error
            if existing is not None:
                logger.info("Concurrent duplicate registration for form %s", form.slug)
                return self._duplicate_outcome(existing)
            logger.exception("Registration insert violated a constraint")
            raise StoreError("Failed to submit registration") from e
        except SQLAlchemyError as e:
            db.rollback()
            self._compensate(db, allocated, registration_id)
            logger.exception("Failed to persist registration for form %s", form.slug)
            raise StoreError("Failed to submit registration") from e

        logger.info(
            "Registration %s completed for form %s with coupon %s",
            registration.id, form.slug, registration.coupon_code
        )
        return RegistrationOutcome(
            state=RegistrationState.COMPLETED,
            registration=registration,
            coupon_code=registration.coupon_code,
            linkedin_url=redemption_url(registration.coupon_code, registration.linkedin_url),
            message="Registration successful"
        )

    def _allocate(
        self,
        db: Session,
        form: Form,
        requester: Requester,
        registration_id: uuid.UUID
    ) -> Optional[Allocated]:
        result = self.allocator.allocate(db, form.id, requester, registration_id)
        if isinstance(result, Exhausted) and form.generate_coupons:
            result = self._mint_coupon(db, form, requester, registration_id)
        if isinstance(result, Allocated):
            return result
        return None

    def _mint_coupon(
        self,
        db: Session,
        form: Form,
        requester: Requester,
        registration_id: uuid.UUID
    ) -> Allocated:
        """Create a fresh single-use coupon bound to the form, already reserved."""
        for _ in range(settings.generated_coupon_attempts):
            code = generate_coupon_code()
            try:
                coupon = crud.create_reserved_coupon(
                    db, code, registration_id,
                    form_id=form.id,
                    user_name=requester.name,
                    user_email=requester.email,
                    user_mobile=requester.mobile,
                    description="Generated at registration"
                )
            except IntegrityError:
                continue
            except SQLAlchemyError as e:
                logger.exception("Failed to generate a coupon for form %s", form.slug)
                raise StoreError("Failed to generate a coupon") from e
            logger.info(
                "Generated coupon %s for form %s and registration %s",
                coupon.code, form.slug, registration_id
            )
            return Allocated(
                code=coupon.code,
                coupon_id=coupon.id,
                linkedin_url=coupon.linkedin_url,
                pool="generated"
            )
        raise StoreError("Failed to generate a unique coupon code")

    def _compensate(self, db: Session, allocated: Optional[Allocated], registration_id: uuid.UUID) -> None:
        if allocated is None:
            return
        try:
            self.allocator.release(db, allocated.code, registration_id)
        except StoreError:
            logger.error(
                "Coupon %s is still reserved for failed registration %s; run the coupon audit",
                allocated.code, registration_id
            )

    def _registration_fields(
        self,
        submission: RegistrationSubmission,
        form: Form,
        email: str,
        mobile: str
    ) -> Dict[str, Any]:
        return {
            "form_id": form.id,
            "email": email,
            "mobile": mobile,
            "name": (submission.name or "").strip() or "Anonymous",
            "college": (submission.college or "").strip() or form.college or "",
            "register_number": (submission.register_number or "").strip(),
            "yop": (submission.yop or "").strip(),
            "latitude": submission.latitude,
            "longitude": submission.longitude,
            "dynamic_fields": submission.extra_fields or None,
        }

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    def _scope_form_id(self, form: Form):
        return None if self.uniqueness_scope == "global" else form.id

    def _find_duplicate(self, db: Session, email: str, mobile: str, form: Form) -> Optional[Registration]:
        return crud.find_existing_registration(db, email, mobile, form_id=self._scope_form_id(form))

    def _duplicate_outcome(self, existing: Registration) -> RegistrationOutcome:
        return RegistrationOutcome(
            state=RegistrationState.DUPLICATE,
            registration=existing,
            coupon_code=existing.coupon_code,
            linkedin_url=redemption_url(existing.coupon_code, existing.linkedin_url),
            message="Email or mobile already registered for this form"
        )

    def check_email(self, db: Session, email: str, slug: str) -> Optional[Registration]:
        """Existing registration for an email, honoring the uniqueness scope."""
        form = self.forms.get_form_by_slug(db, slug)
        return crud.get_registration_by_email(db, email.strip().lower(), form_id=self._scope_form_id(form))

    def check_mobile(self, db: Session, mobile: str, slug: str) -> Optional[Registration]:
        """Existing registration for a mobile number, honoring the uniqueness scope."""
        mobile = mobile.strip()
        if not re.match(settings.mobile_pattern, mobile):
            raise ValidationError("Please provide a valid 10-digit mobile number", field="mobile")
        form = self.forms.get_form_by_slug(db, slug)
        return crud.get_registration_by_mobile(db, mobile, form_id=self._scope_form_id(form))

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    def track_coupon_usage(
        self,
        db: Session,
        email: str,
        code: str,
        slug: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Mark the coupon a registrant received as used."""
        form = self.forms.get_form_by_slug(db, slug)
        registration = crud.get_registration_by_email(db, email.strip().lower(), form_id=form.id)
        if registration is None:
            raise NotFoundError("Registration not found", field="email")
        if registration.coupon_code and crud.normalize_code(code) != registration.coupon_code:
            raise ValidationError("Coupon code does not belong to this registration", field="couponCode")
        return self.tracker.record_redemption(db, code, registration.id, metadata)
