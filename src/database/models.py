"""SQLAlchemy database models.

This module defines the database schema using SQLAlchemy ORM: forms,
registrations, coupons and their usage/copy event logs, upload batches and
admin users.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Boolean, DateTime, Numeric, Integer,
    ForeignKey, Text, Index, JSON, UniqueConstraint, CheckConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship, DeclarativeBase
from sqlalchemy.sql import func
import uuid

# Use JSONB for PostgreSQL, JSON for other databases (like SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all business timestamps are stored this way)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class User(Base):
    """Admin/staff account model."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Form(Base):
    """Registration form; the core only reads its window and coupon policy."""
    __tablename__ = "forms"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False, default="Student Registration")
    college = Column(String(255), nullable=False, default="")
    activation = Column(DateTime, nullable=False)
    deactivation = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    coupon_required = Column(Boolean, default=False, nullable=False)
    generate_coupons = Column(Boolean, default=False, nullable=False)
    coupon_limit = Column(Integer, default=0, nullable=False)  # 0 means unlimited
    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    registrations = relationship("Registration", back_populates="form")
    coupons = relationship("Coupon", back_populates="form")

    __table_args__ = (
        Index("ix_forms_window", "activation", "deactivation"),
    )

    def is_open(self, now: datetime = None) -> bool:
        """Whether the form accepts submissions at `now`."""
        now = now or utcnow()
        return (
            self.is_active
            and as_utc_naive(self.activation) <= now <= as_utc_naive(self.deactivation)
        )

    def __repr__(self):
        return f"<Form(slug={self.slug}, active={self.is_active})>"


class Registration(Base):
    """A registrant's submission for one form."""
    __tablename__ = "registrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    form_id = Column(UUID(as_uuid=True), ForeignKey("forms.id"), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    mobile = Column(String(20), nullable=False)
    college = Column(String(255), nullable=False, default="")
    register_number = Column(String(100), nullable=False, default="")
    yop = Column(String(10), nullable=False, default="")
    dynamic_fields = Column(JSONType, nullable=True)
    latitude = Column(Numeric(10, 8), nullable=True)
    longitude = Column(Numeric(11, 8), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Denormalized copy of the allocated coupon; set once at creation
    coupon_code = Column(String(100), nullable=True)
    linkedin_url = Column(Text, nullable=True)
    coupon_used = Column(Boolean, default=False, nullable=False)
    coupon_used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    form = relationship("Form", back_populates="registrations")

    __table_args__ = (
        UniqueConstraint("email", "form_id", name="uq_registrations_email_form"),
        UniqueConstraint("mobile", "form_id", name="uq_registrations_mobile_form"),
        Index("ix_registrations_form_created", "form_id", "created_at"),
        Index("ix_registrations_email", "email"),
        Index("ix_registrations_mobile", "mobile"),
        Index("ix_registrations_coupon_code", "coupon_code"),
    )

    def __repr__(self):
        return f"<Registration(id={self.id}, email={self.email}, coupon={self.coupon_code})>"


class CouponUpload(Base):
    """A batch of coupons provisioned from one uploaded file."""
    __tablename__ = "coupon_uploads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=True)
    uploaded_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    form_id = Column(UUID(as_uuid=True), ForeignKey("forms.id"), nullable=True)
    coupons_added = Column(Integer, nullable=False, default=0)
    duplicates_skipped = Column(Integer, nullable=False, default=0)
    errors = Column(JSONType, nullable=True)
    status = Column(String(20), nullable=False, default="processing")  # processing, completed, error
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    coupons = relationship("Coupon", back_populates="upload")

    def __repr__(self):
        return f"<CouponUpload(id={self.id}, file={self.file_name}, added={self.coupons_added})>"


class Coupon(Base):
    """
    A coupon code that can be allocated to registrations.

    The integer primary key doubles as the insertion sequence used for
    first-in-first-out allocation.
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    form_id = Column(UUID(as_uuid=True), ForeignKey("forms.id"), nullable=True)  # NULL: general pool
    description = Column(String(255), nullable=True)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    is_percentage = Column(Boolean, nullable=False, default=True)
    max_uses = Column(Integer, nullable=False, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expiry_date = Column(DateTime, nullable=True)
    linkedin_url = Column(Text, nullable=True)  # Pre-defined redemption link
    upload_id = Column(UUID(as_uuid=True), ForeignKey("coupon_uploads.id"), nullable=True)
    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    extra_data = Column(JSONType, nullable=True)  # Extra spreadsheet columns
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    form = relationship("Form", back_populates="coupons")
    upload = relationship("CouponUpload", back_populates="coupons")
    usages = relationship("CouponUsage", back_populates="coupon", order_by="CouponUsage.id")
    copy_events = relationship("CouponCopyEvent", back_populates="coupon", order_by="CouponCopyEvent.id")

    __table_args__ = (
        Index("ix_coupons_pool", "form_id", "is_active", "id"),
        Index("ix_coupons_upload", "upload_id"),
        CheckConstraint("used_count >= 0 AND used_count <= max_uses", name="ck_coupons_used_count"),
    )

    @property
    def remaining_uses(self) -> int:
        return max(self.max_uses - self.used_count, 0)

    def is_expired(self, now: datetime = None) -> bool:
        if self.expiry_date is None:
            return False
        return as_utc_naive(self.expiry_date) <= (now or utcnow())

    def __repr__(self):
        return f"<Coupon(code={self.code}, uses={self.used_count}/{self.max_uses})>"


class CouponUsage(Base):
    """
    One reservation of a coupon by a registration attempt.

    `registration_id` is the reservation key; it is written before the
    registration row exists, so it carries no foreign key.
    """
    __tablename__ = "coupon_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    registration_id = Column(UUID(as_uuid=True), nullable=False)
    form_id = Column(UUID(as_uuid=True), nullable=True)
    used_at = Column(DateTime, nullable=False, default=utcnow)
    redeemed_at = Column(DateTime, nullable=True)
    discount_applied = Column(Numeric(10, 2), nullable=True)
    user_name = Column(String(255), nullable=True)
    user_email = Column(String(255), nullable=True)
    user_mobile = Column(String(20), nullable=True)
    redemption_data = Column(JSONType, nullable=True)

    # Relationships
    coupon = relationship("Coupon", back_populates="usages")

    __table_args__ = (
        UniqueConstraint("coupon_id", "registration_id", name="uq_coupon_usages_coupon_registration"),
        Index("ix_coupon_usages_registration", "registration_id"),
    )

    def __repr__(self):
        return f"<CouponUsage(coupon_id={self.coupon_id}, registration_id={self.registration_id})>"


class CouponCopyEvent(Base):
    """Copy/view telemetry for a coupon. Append-only."""
    __tablename__ = "coupon_copy_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    view_time = Column(DateTime, nullable=True)
    source = Column(String(100), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    form_id = Column(UUID(as_uuid=True), nullable=True)
    form_slug = Column(String(100), nullable=True)
    form_name = Column(String(255), nullable=True)
    linkedin_url = Column(Text, nullable=True)
    registration_time = Column(DateTime, nullable=True)
    from_success_banner = Column(Boolean, nullable=False, default=False)
    form_data = Column(JSONType, nullable=True)

    # Relationships
    coupon = relationship("Coupon", back_populates="copy_events")

    __table_args__ = (
        Index("ix_coupon_copy_events_coupon_time", "coupon_id", "timestamp"),
    )

    def __repr__(self):
        return f"<CouponCopyEvent(coupon_id={self.coupon_id}, source={self.source})>"
