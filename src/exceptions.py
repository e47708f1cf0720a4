"""Error taxonomy shared by the services and the HTTP layer.

Each error carries the HTTP status it maps to; `main.py` renders them as
``{"success": false, "message": ...}``.
"""

from typing import Optional


class CouponServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(CouponServiceError):
    """Malformed or missing input."""

    status_code = 400


class NotFoundError(CouponServiceError):
    """Form, coupon or registration does not exist."""

    status_code = 404


class ConflictError(CouponServiceError):
    """Business conflict: duplicate, pool exhausted, coupon fully used."""

    status_code = 409


class StoreError(CouponServiceError):
    """Transient database failure; the client may retry the whole request."""

    status_code = 500


class TelemetryError(Exception):
    """Copy/view tracking failed. Logged, never surfaced."""
