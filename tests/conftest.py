"""Shared test fixtures.

This module contains pytest fixtures used across multiple test files.
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from src.database.models import Base, utcnow
from src.database.session import get_db
from src.database import crud
from src.auth_utils import hash_password, create_access_token


# ============================================================================
# Test Database Setup
# ============================================================================

@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Use in-memory SQLite for testing
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    # Create tables
    Base.metadata.create_all(bind=engine)

    # Override the get_db dependency
    def override_get_db():
        try:
            db = TestingSessionLocal()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    db = TestingSessionLocal()
    yield db

    # Cleanup
    db.close()
    Base.metadata.drop_all(bind=engine)
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(test_db):
    """Create a test client."""
    return TestClient(app)


# ============================================================================
# Users
# ============================================================================

@pytest.fixture(scope="function")
def admin_user(test_db):
    """Create an admin user."""
    return crud.create_user(
        test_db,
        email="admin@example.com",
        password_hash=hash_password("adminpassword123"),
        full_name="Admin",
        is_admin=True
    )


@pytest.fixture(scope="function")
def staff_user(test_db, admin_user):
    """Create a non-admin user."""
    return crud.create_user(
        test_db,
        email="staff@example.com",
        password_hash=hash_password("staffpassword123")
    )


def bearer(user):
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def admin_headers(admin_user):
    """Authorization header for the admin user."""
    return bearer(admin_user)


@pytest.fixture(scope="function")
def staff_headers(staff_user):
    """Authorization header for the non-admin user."""
    return bearer(staff_user)


# ============================================================================
# Forms and Coupons
# ============================================================================

def make_form(db, slug, **kwargs):
    now = utcnow()
    kwargs.setdefault("activation", now - timedelta(days=1))
    kwargs.setdefault("deactivation", now + timedelta(days=1))
    kwargs.setdefault("title", f"{slug} registration")
    return crud.create_form(db, slug, **kwargs)


def make_coupons(db, codes, form_id=None, **kwargs):
    return [crud.create_coupon(db, code, form_id=form_id, **kwargs) for code in codes]


@pytest.fixture(scope="function")
def open_form(test_db):
    """An open form without a coupon requirement."""
    return make_form(test_db, "spring-fest")


@pytest.fixture(scope="function")
def required_form(test_db):
    """An open form that refuses registrations once its coupons run out."""
    return make_form(test_db, "workshop", coupon_required=True)


@pytest.fixture(scope="function")
def closed_form(test_db):
    """A form whose window has ended."""
    now = utcnow()
    return make_form(
        test_db,
        "last-year",
        activation=now - timedelta(days=10),
        deactivation=now - timedelta(days=5)
    )


@pytest.fixture(scope="function")
def form_coupons(test_db, open_form):
    """Two single-use coupons bound to the open form."""
    return make_coupons(test_db, ["FORM-A1", "FORM-A2"], form_id=open_form.id)


@pytest.fixture(scope="function")
def general_coupons(test_db):
    """Two single-use coupons in the general pool."""
    return make_coupons(test_db, ["GEN-B1", "GEN-B2"])


@pytest.fixture(scope="function")
def form_factory(test_db):
    """Create open forms: form_factory("slug", coupon_required=True)."""
    def factory(slug, **kwargs):
        return make_form(test_db, slug, **kwargs)
    return factory


@pytest.fixture(scope="function")
def coupon_factory(test_db):
    """Create coupons: coupon_factory(["A", "B"], form_id=..., max_uses=2)."""
    def factory(codes, form_id=None, **kwargs):
        return make_coupons(test_db, codes, form_id=form_id, **kwargs)
    return factory
