"""Admin API endpoints for managing forms, coupon uploads and statistics.

All endpoints require admin privileges.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.database.session import get_db
from src.database import crud
from src.database.models import User, as_utc_naive
from src.api.auth import get_admin_user
from src.services import ingestion, stats
from src.services.forms import FormRegistry


router = APIRouter(prefix="/admin", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class FormResponse(BaseModel):
    """Registration form response."""
    id: UUID
    slug: str
    title: str
    college: str
    activation: datetime
    deactivation: datetime
    is_active: bool
    coupon_required: bool
    generate_coupons: bool
    coupon_limit: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CreateFormRequest(BaseModel):
    """Request to create a registration form."""
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    title: str = "Student Registration"
    college: str = ""
    activation: datetime
    deactivation: datetime
    is_active: bool = True
    coupon_required: bool = False
    generate_coupons: bool = False
    coupon_limit: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_window(self) -> "CreateFormRequest":
        if as_utc_naive(self.deactivation) <= as_utc_naive(self.activation):
            raise ValueError("deactivation must be after activation")
        return self


class UpdateFormRequest(BaseModel):
    """Request to update a registration form."""
    title: Optional[str] = None
    college: Optional[str] = None
    activation: Optional[datetime] = None
    deactivation: Optional[datetime] = None
    is_active: Optional[bool] = None
    coupon_required: Optional[bool] = None
    generate_coupons: Optional[bool] = None
    coupon_limit: Optional[int] = Field(default=None, ge=0)


class RegistrationResponse(BaseModel):
    """Registration list item response."""
    id: UUID
    name: str
    email: str
    mobile: str
    college: str
    register_number: str
    yop: str
    coupon_code: Optional[str] = None
    coupon_used: bool
    coupon_used_at: Optional[datetime] = None
    dynamic_fields: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UploadResponse(BaseModel):
    """Coupon upload batch response."""
    id: UUID
    file_name: str
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    form_id: Optional[UUID] = None
    uploaded_by_id: Optional[UUID] = None
    coupons_added: int
    duplicates_skipped: int
    errors: Optional[List[Dict[str, Any]]] = None
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class DeleteUploadResponse(BaseModel):
    success: bool = True
    coupons_deleted: int


class DailyCount(BaseModel):
    date: str
    count: int


# ============================================================================
# Form Management Endpoints
# ============================================================================

@router.post("/forms", response_model=FormResponse, status_code=status.HTTP_201_CREATED)
def create_form(
    request: CreateFormRequest,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Create a registration form (admin only)."""
    if crud.get_form_by_slug(db, request.slug):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A form with this slug already exists"
        )

    fields = request.model_dump()
    fields["activation"] = as_utc_naive(fields["activation"])
    fields["deactivation"] = as_utc_naive(fields["deactivation"])
    try:
        return crud.create_form(db, created_by_id=admin_user.id, **fields)
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A form with this slug already exists"
        )


@router.get("/forms", response_model=List[FormResponse])
def list_forms(
    limit: int = 100,
    offset: int = 0,
    include_inactive: bool = True,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Get all forms, newest first (admin only)."""
    return crud.get_all_forms(db, limit=limit, offset=offset, include_inactive=include_inactive)


@router.get("/forms/{form_id}", response_model=FormResponse)
def get_form(
    form_id: UUID,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Get a form by ID (admin only)."""
    return FormRegistry().get_form(db, form_id)


@router.patch("/forms/{form_id}", response_model=FormResponse)
def update_form(
    form_id: UUID,
    request: UpdateFormRequest,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Update a form's window and coupon policy (admin only)."""
    form = FormRegistry().get_form(db, form_id)

    updates = request.model_dump(exclude_unset=True)
    for key in ("activation", "deactivation"):
        if updates.get(key) is not None:
            updates[key] = as_utc_naive(updates[key])

    activation = updates.get("activation") or form.activation
    deactivation = updates.get("deactivation") or form.deactivation
    if as_utc_naive(deactivation) <= as_utc_naive(activation):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="deactivation must be after activation"
        )

    return crud.update_form(db, form_id, **updates)


@router.get("/forms/{form_id}/registrations", response_model=List[RegistrationResponse])
def list_form_registrations(
    form_id: UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Get a form's registrations, newest first (admin only)."""
    FormRegistry().get_form(db, form_id)
    return crud.get_form_registrations(db, form_id, limit=limit, offset=offset)


@router.get("/forms/{form_id}/stats")
def get_form_stats(
    form_id: UUID,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Registration and coupon pool figures for one form (admin only)."""
    return stats.get_form_stats(db, form_id)


# ============================================================================
# Coupon Upload Endpoints
# ============================================================================

@router.get("/uploads", response_model=List[UploadResponse])
def list_uploads(
    limit: int = 100,
    offset: int = 0,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Get coupon upload batches, newest first (admin only)."""
    return crud.get_all_coupon_uploads(db, limit=limit, offset=offset)


@router.get("/uploads/{upload_id}", response_model=UploadResponse)
def get_upload(
    upload_id: UUID,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Get one coupon upload batch (admin only)."""
    upload = crud.get_coupon_upload(db, upload_id)
    if not upload:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Coupon upload not found"
        )
    return upload


@router.delete("/uploads/{upload_id}", response_model=DeleteUploadResponse)
def delete_upload(
    upload_id: UUID,
    force: bool = False,
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """
    Delete an upload batch and its coupons (admin only).

    Refused with 409 when coupons of the batch were already used, unless
    force=true.
    """
    deleted = ingestion.purge_upload(db, upload_id, force=force)
    return DeleteUploadResponse(coupons_deleted=deleted)


# ============================================================================
# Statistics Endpoints
# ============================================================================

@router.get("/stats")
def get_admin_stats(
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Platform-wide registration and coupon figures (admin only)."""
    return stats.get_overview(db)


@router.get("/stats/by-date", response_model=List[DailyCount])
def get_registrations_by_date(
    form_id: Optional[UUID] = None,
    days: int = Query(default=30, ge=1, le=365),
    admin_user: User = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    """Daily registration counts (admin only)."""
    return stats.get_registrations_by_date(db, form_id=form_id, days=days)
