"""Read-side access to forms for the registration and coupon services."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from src.database import crud
from src.database.models import Form
from src.exceptions import NotFoundError, ValidationError


class FormRegistry:
    """Looks up forms and checks whether they accept submissions."""

    def get_form(self, db: Session, form_id: UUID) -> Form:
        form = crud.get_form_by_id(db, form_id)
        if form is None:
            raise NotFoundError("Form not found", field="formId")
        return form

    def get_form_by_slug(self, db: Session, slug: str) -> Form:
        form = crud.get_form_by_slug(db, slug)
        if form is None:
            raise NotFoundError("Form not found", field="formSlug")
        return form

    def get_open_form(self, db: Session, slug: str, now: Optional[datetime] = None) -> Form:
        """Get a form that is active and inside its activation window."""
        form = self.get_form_by_slug(db, slug)
        if not form.is_open(now):
            raise ValidationError("Form is not currently active", field="formSlug")
        return form
