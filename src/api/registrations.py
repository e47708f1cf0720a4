"""Public registration endpoints.

Registrants submit a form here and get their coupon back in the response.
"""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Union
from uuid import UUID
from sqlalchemy.orm import Session

from src.api.schemas import CamelModel
from src.database.models import Registration
from src.database.session import get_db
from src.exceptions import ConflictError
from src.services.registration import (
    RegistrationService, RegistrationState, RegistrationSubmission, redemption_url
)


router = APIRouter(prefix="/registrations", tags=["registrations"])


def get_registration_service() -> RegistrationService:
    return RegistrationService()


# ============================================================================
# Pydantic Models
# ============================================================================

class Location(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RegistrationSubmitRequest(CamelModel):
    """Form submission; unknown keys are kept as dynamic form fields."""
    email: str = ""
    mobile: str = ""
    form_slug: str = ""
    name: Optional[str] = None
    college: Optional[str] = None
    register_number: Optional[str] = None
    yop: Optional[Union[str, int]] = None
    location: Optional[Location] = None

    model_config = ConfigDict(extra="allow")

    def to_submission(self) -> RegistrationSubmission:
        location = self.location or Location()
        return RegistrationSubmission(
            email=self.email,
            mobile=self.mobile,
            form_slug=self.form_slug,
            name=self.name,
            college=self.college,
            register_number=self.register_number,
            yop=str(self.yop) if self.yop is not None else None,
            latitude=location.latitude,
            longitude=location.longitude,
            extra_fields=dict(self.model_extra or {}),
        )


class RegistrationSummary(CamelModel):
    id: UUID
    coupon_code: Optional[str] = None
    linkedin_url: Optional[str] = Field(default=None, alias="linkedInUrl")

    @classmethod
    def from_registration(cls, registration: Registration) -> "RegistrationSummary":
        return cls(
            id=registration.id,
            coupon_code=registration.coupon_code,
            linkedin_url=redemption_url(registration.coupon_code, registration.linkedin_url),
        )


class RegistrationSubmitResponse(CamelModel):
    success: bool = True
    message: str
    exists: Optional[bool] = None
    registration_id: Optional[UUID] = None
    coupon_code: Optional[str] = None
    linkedin_url: Optional[str] = Field(default=None, alias="linkedInUrl")
    registration: Optional[RegistrationSummary] = None


class CheckEmailRequest(CamelModel):
    email: str
    slug: str


class CheckMobileRequest(CamelModel):
    mobile: str
    slug: str


class CheckResponse(CamelModel):
    success: bool = True
    exists: bool
    message: str
    registration: Optional[RegistrationSummary] = None


class TrackCouponRequest(CamelModel):
    email: str
    coupon_code: str
    slug: str
    metadata: Optional[Dict[str, Any]] = None


class TrackCouponResponse(CamelModel):
    success: bool = True
    recorded: bool
    message: str


# ============================================================================
# Endpoints
# ============================================================================

@router.post(
    "/submit",
    response_model=RegistrationSubmitResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED
)
def submit_registration(
    payload: RegistrationSubmitRequest,
    response: Response,
    db: Session = Depends(get_db),
    service: RegistrationService = Depends(get_registration_service)
):
    """
    Register for a form and receive a coupon.

    201 with the coupon on success, 200 with the existing registration when
    the email or mobile is already registered, 409 when the form's coupons
    are exhausted and a coupon is required.
    """
    outcome = service.submit(db, payload.to_submission())

    if outcome.state == RegistrationState.LIMIT_REACHED:
        raise ConflictError(outcome.message)

    if outcome.state == RegistrationState.DUPLICATE:
        response.status_code = status.HTTP_200_OK
        return RegistrationSubmitResponse(
            message=outcome.message,
            exists=True,
            registration=RegistrationSummary.from_registration(outcome.registration),
        )

    return RegistrationSubmitResponse(
        message=outcome.message,
        registration_id=outcome.registration.id,
        coupon_code=outcome.coupon_code,
        linkedin_url=outcome.linkedin_url,
    )


def _check_response(registration: Optional[Registration], label: str) -> CheckResponse:
    if registration is None:
        return CheckResponse(exists=False, message=f"{label} is available")
    return CheckResponse(
        exists=True,
        message=f"{label} already registered",
        registration=RegistrationSummary.from_registration(registration),
    )


@router.post("/check-email", response_model=CheckResponse, response_model_exclude_none=True)
def check_email(
    payload: CheckEmailRequest,
    db: Session = Depends(get_db),
    service: RegistrationService = Depends(get_registration_service)
):
    """Check whether an email is already registered for a form."""
    return _check_response(service.check_email(db, payload.email, payload.slug), "Email")


@router.post("/check-mobile", response_model=CheckResponse, response_model_exclude_none=True)
def check_mobile(
    payload: CheckMobileRequest,
    db: Session = Depends(get_db),
    service: RegistrationService = Depends(get_registration_service)
):
    """Check whether a mobile number is already registered for a form."""
    return _check_response(service.check_mobile(db, payload.mobile, payload.slug), "Mobile")


@router.post("/track-coupon", response_model=TrackCouponResponse)
def track_coupon(
    payload: TrackCouponRequest,
    db: Session = Depends(get_db),
    service: RegistrationService = Depends(get_registration_service)
):
    """Record that a registrant used the coupon they were given."""
    recorded = service.track_coupon_usage(
        db, payload.email, payload.coupon_code, payload.slug, payload.metadata
    )
    message = "Coupon usage recorded" if recorded else "Coupon usage already recorded"
    return TrackCouponResponse(recorded=recorded, message=message)
