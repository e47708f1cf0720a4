"""Tests for the public registration endpoints."""

import pytest


def payload(slug="spring-fest", n=1, **extra):
    body = {
        "email": f"r{n}@example.com",
        "mobile": f"98765432{n:02d}",
        "formSlug": slug,
        "name": f"Registrant {n}",
        "college": "State University",
        "register_number": f"REG{n:03d}",
        "yop": 2026,
    }
    body.update(extra)
    return body


class TestSubmit:
    """POST /api/registrations/submit"""

    def test_submit_returns_coupon(self, client, open_form, form_coupons):
        response = client.post("/api/registrations/submit", json=payload())

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["couponCode"] == "FORM-A1"
        assert data["registrationId"]
        assert data["linkedInUrl"] == "https://www.linkedin.com/premium/redeem/gift?_ed=FORM-A1"
        assert "exists" not in data

    def test_duplicate_returns_existing(self, client, open_form, form_coupons):
        first = client.post("/api/registrations/submit", json=payload()).json()

        response = client.post("/api/registrations/submit", json=payload())

        assert response.status_code == 200
        data = response.json()
        assert data["exists"] is True
        assert data["registration"]["id"] == first["registrationId"]
        assert data["registration"]["couponCode"] == "FORM-A1"

    def test_limit_reached(self, client, required_form, coupon_factory):
        coupon_factory(["A1"], form_id=required_form.id)
        assert client.post("/api/registrations/submit", json=payload("workshop", 1)).status_code == 201

        response = client.post("/api/registrations/submit", json=payload("workshop", 2))

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert "limit" in response.json()["message"].lower()

    def test_invalid_mobile(self, client, open_form):
        response = client.post("/api/registrations/submit", json=payload(mobile="123"))

        assert response.status_code == 400
        data = response.json()
        assert data == {
            "success": False,
            "message": "Please provide a valid 10-digit mobile number",
            "field": "mobile",
        }

    def test_missing_email(self, client, open_form):
        body = payload()
        del body["email"]
        response = client.post("/api/registrations/submit", json=body)
        assert response.status_code == 400
        assert response.json()["field"] == "email"

    def test_wrong_field_type(self, client, open_form):
        response = client.post("/api/registrations/submit", json=payload(email=123))

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["field"] == "email"
        assert data["message"]

    def test_malformed_json(self, client, open_form):
        response = client.post(
            "/api/registrations/submit",
            content=b"{not json",
            headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_form(self, client, test_db):
        response = client.post("/api/registrations/submit", json=payload("missing"))
        assert response.status_code == 404

    def test_closed_form(self, client, closed_form):
        response = client.post("/api/registrations/submit", json=payload("last-year"))
        assert response.status_code == 400

    def test_dynamic_fields_stored(self, client, test_db, open_form):
        from src.database import crud

        response = client.post(
            "/api/registrations/submit",
            json=payload(department="ECE", location={"latitude": 12.9, "longitude": 77.5})
        )
        assert response.status_code == 201

        test_db.expire_all()
        registration = crud.get_registration_by_email(test_db, "r1@example.com")
        assert registration.dynamic_fields == {"department": "ECE"}
        assert registration.yop == "2026"
        assert registration.register_number == "REG001"


class TestChecks:
    """POST /api/registrations/check-email and check-mobile"""

    def test_check_email(self, client, open_form):
        response = client.post(
            "/api/registrations/check-email", json={"email": "r1@example.com", "slug": "spring-fest"}
        )
        assert response.status_code == 200
        assert response.json()["exists"] is False

        client.post("/api/registrations/submit", json=payload())

        data = client.post(
            "/api/registrations/check-email", json={"email": "r1@example.com", "slug": "spring-fest"}
        ).json()
        assert data["exists"] is True
        assert data["registration"]["id"]

    def test_check_mobile(self, client, open_form):
        client.post("/api/registrations/submit", json=payload())

        data = client.post(
            "/api/registrations/check-mobile", json={"mobile": "9876543201", "slug": "spring-fest"}
        ).json()
        assert data["exists"] is True

    def test_check_unknown_form(self, client, test_db):
        response = client.post(
            "/api/registrations/check-email", json={"email": "r1@example.com", "slug": "nope"}
        )
        assert response.status_code == 404


class TestTrackCoupon:
    """POST /api/registrations/track-coupon"""

    def test_track_coupon(self, client, test_db, open_form, form_coupons):
        client.post("/api/registrations/submit", json=payload())
        body = {"email": "r1@example.com", "couponCode": "FORM-A1", "slug": "spring-fest"}

        first = client.post("/api/registrations/track-coupon", json=body)
        second = client.post("/api/registrations/track-coupon", json=body)

        assert first.status_code == 200
        assert first.json()["recorded"] is True
        assert second.json()["recorded"] is False

    def test_track_unknown_registration(self, client, open_form, form_coupons):
        response = client.post(
            "/api/registrations/track-coupon",
            json={"email": "ghost@example.com", "couponCode": "FORM-A1", "slug": "spring-fest"}
        )
        assert response.status_code == 404
        assert response.json()["success"] is False
