"""Coupon endpoints.

Public: validating a code and copy/view tracking. Admin: provisioning coupons
from CSV/XLSX uploads, listing them and toggling their status.
"""

from fastapi import APIRouter, Depends, File, Form as FormField, Query, Request, UploadFile, status
from pydantic import Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID
from sqlalchemy.orm import Session

from src.api.auth import get_admin_user
from src.api.schemas import CamelModel
from src.database import crud
from src.database.models import User, utcnow
from src.database.session import get_db
from src.exceptions import NotFoundError, ValidationError
from src.services import ingestion, stats
from src.services.forms import FormRegistry
from src.services.usage import UsageTracker


router = APIRouter(prefix="/coupons", tags=["coupons"])


def get_usage_tracker() -> UsageTracker:
    return UsageTracker()


# ============================================================================
# Pydantic Models
# ============================================================================

class CouponResponse(CamelModel):
    """Coupon details."""
    id: int
    code: str
    form_id: Optional[UUID] = None
    description: Optional[str] = None
    discount: float
    is_percentage: bool
    max_uses: int
    used_count: int
    remaining_uses: int
    is_active: bool
    expiry_date: Optional[datetime] = None
    linkedin_url: Optional[str] = Field(default=None, alias="linkedInUrl")
    upload_id: Optional[UUID] = None
    created_at: datetime


class ValidateCouponRequest(CamelModel):
    code: str
    form_id: Optional[UUID] = None


class ValidateCouponResponse(CamelModel):
    success: bool = True
    valid: bool = True
    coupon: CouponResponse


class CopyEventFields(CamelModel):
    """Context sent along with a copy/view event."""
    source: Optional[str] = None
    form_id: Optional[UUID] = None
    form_slug: Optional[str] = None
    form_name: Optional[str] = None
    linkedin_url: Optional[str] = Field(default=None, alias="linkedInUrl")
    view_time: Optional[datetime] = None
    registration_time: Optional[datetime] = None
    from_success_banner: bool = False
    form_data: Optional[Dict[str, Any]] = None

    def event(self, request: Request) -> Dict[str, Any]:
        fields = self.model_dump(
            include={
                "source", "form_id", "form_slug", "form_name", "linkedin_url",
                "view_time", "registration_time", "from_success_banner", "form_data",
            }
        )
        fields["ip_address"] = request.client.host if request.client else None
        fields["user_agent"] = request.headers.get("user-agent")
        return fields


class TrackCopyRequest(CopyEventFields):
    coupon_code: str


class TrackBulkCopyRequest(CopyEventFields):
    coupon_codes: List[str] = Field(min_length=1)


class TrackCopyResponse(CamelModel):
    success: bool = True
    recorded: int


class UploadResponse(CamelModel):
    success: bool = True
    upload_id: UUID
    file_name: str
    added: int
    duplicates: int
    errors: List[Dict[str, Any]]


class CouponStatusRequest(CamelModel):
    is_active: bool


# ============================================================================
# Public Endpoints
# ============================================================================

@router.post("/validate", response_model=ValidateCouponResponse)
def validate_coupon(payload: ValidateCouponRequest, db: Session = Depends(get_db)):
    """
    Check that a code exists and could still be used.

    404 if the code is unknown, 400 if it is inactive, expired, fully used or
    bound to a different form.
    """
    coupon = crud.get_coupon_by_code(db, payload.code)
    if coupon is None:
        raise NotFoundError("Coupon not found", field="code")
    if not coupon.is_active:
        raise ValidationError("Coupon is not active", field="code")
    if coupon.is_expired(utcnow()):
        raise ValidationError("Coupon has expired", field="code")
    if coupon.remaining_uses <= 0:
        raise ValidationError("Coupon usage limit reached", field="code")
    if payload.form_id and coupon.form_id and coupon.form_id != payload.form_id:
        raise ValidationError("Coupon is not valid for this form", field="code")

    return ValidateCouponResponse(coupon=CouponResponse.model_validate(coupon))


@router.post("/track-copy", response_model=TrackCopyResponse)
def track_copy(
    payload: TrackCopyRequest,
    request: Request,
    db: Session = Depends(get_db),
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    """Record that a coupon was copied or viewed. Always succeeds."""
    recorded = tracker.record_copy_event(db, payload.coupon_code, payload.event(request))
    return TrackCopyResponse(recorded=1 if recorded else 0)


@router.post("/track-bulk-copy", response_model=TrackCopyResponse)
def track_bulk_copy(
    payload: TrackBulkCopyRequest,
    request: Request,
    db: Session = Depends(get_db),
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    """Record one copy event for each of several coupons. Always succeeds."""
    recorded = tracker.record_bulk_copy_events(db, payload.coupon_codes, payload.event(request))
    return TrackCopyResponse(recorded=recorded)


# ============================================================================
# Admin Endpoints
# ============================================================================

@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
def upload_coupons(
    file: UploadFile = File(...),
    form_id: Optional[UUID] = FormField(default=None, alias="formId"),
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """
    Provision coupons from a CSV or XLSX file (admin only).

    Without formId the coupons join the general pool.
    """
    form = FormRegistry().get_form(db, form_id) if form_id else None
    content = file.file.read()
    upload, report = ingestion.import_coupons(
        db,
        file.filename or "upload.csv",
        content,
        form=form,
        uploaded_by_id=admin_user.id,
        mime_type=file.content_type
    )
    return UploadResponse(
        upload_id=upload.id,
        file_name=upload.file_name,
        added=report.added,
        duplicates=report.duplicates,
        errors=report.errors,
    )


@router.get("", response_model=List[CouponResponse])
def list_coupons(
    form_id: Optional[UUID] = Query(default=None, alias="formId"),
    upload_id: Optional[UUID] = Query(default=None, alias="uploadId"),
    general: bool = False,
    available: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """List coupons in allocation order (admin only)."""
    return crud.get_coupons(
        db,
        form_id=form_id,
        upload_id=upload_id,
        general_only=general,
        available_only=available,
        limit=limit,
        offset=offset
    )


@router.get("/{code}/stats")
def get_coupon_stats(
    code: str,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Usage history and copy telemetry of one coupon (admin only)."""
    return stats.get_coupon_stats(db, code)


@router.patch("/{code}/status", response_model=CouponResponse)
def set_coupon_status(
    code: str,
    payload: CouponStatusRequest,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Activate or deactivate a coupon (admin only)."""
    coupon = crud.set_coupon_active(db, code, payload.is_active)
    if coupon is None:
        raise NotFoundError("Coupon not found", field="code")
    return coupon
