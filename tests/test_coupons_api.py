"""Tests for the coupon endpoints.

This module tests:
- Public validation and copy tracking
- Admin upload, listing and status changes
"""

import io
import pytest
from datetime import timedelta
from openpyxl import Workbook

from src.database import crud
from src.database.models import utcnow


class TestValidate:
    """POST /api/coupons/validate"""

    def test_valid_coupon(self, client, form_coupons):
        response = client.post("/api/coupons/validate", json={"code": "form-a1"})

        assert response.status_code == 200
        coupon = response.json()["coupon"]
        assert coupon["code"] == "FORM-A1"
        assert coupon["remainingUses"] == 1
        assert coupon["maxUses"] == 1

    def test_unknown_coupon(self, client, test_db):
        response = client.post("/api/coupons/validate", json={"code": "NOPE"})
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_inactive_coupon(self, client, test_db, form_coupons):
        crud.set_coupon_active(test_db, "FORM-A1", False)
        response = client.post("/api/coupons/validate", json={"code": "FORM-A1"})
        assert response.status_code == 400
        assert response.json()["message"] == "Coupon is not active"

    def test_expired_coupon(self, client, coupon_factory):
        coupon_factory(["OLD"], expiry_date=utcnow() - timedelta(days=1))
        response = client.post("/api/coupons/validate", json={"code": "OLD"})
        assert response.status_code == 400
        assert response.json()["message"] == "Coupon has expired"

    def test_used_up_coupon(self, client, test_db, form_coupons):
        import uuid
        crud.reserve_coupon(test_db, form_coupons[0].id, uuid.uuid4())
        response = client.post("/api/coupons/validate", json={"code": "FORM-A1"})
        assert response.status_code == 400

    def test_coupon_for_other_form(self, client, form_factory, form_coupons):
        other = form_factory("other-form")
        response = client.post(
            "/api/coupons/validate", json={"code": "FORM-A1", "formId": str(other.id)}
        )
        assert response.status_code == 400

    def test_general_coupon_valid_for_any_form(self, client, open_form, general_coupons):
        response = client.post(
            "/api/coupons/validate", json={"code": "GEN-B1", "formId": str(open_form.id)}
        )
        assert response.status_code == 200


class TestCopyTracking:
    """POST /api/coupons/track-copy and track-bulk-copy"""

    def test_track_copy(self, client, test_db, form_coupons):
        response = client.post(
            "/api/coupons/track-copy",
            json={"couponCode": "FORM-A1", "source": "success-banner", "fromSuccessBanner": True},
            headers={"User-Agent": "pytest-browser"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "recorded": 1}

        event = crud.get_last_copy_event(test_db, form_coupons[0].id)
        assert event.source == "success-banner"
        assert event.user_agent == "pytest-browser"
        assert event.from_success_banner is True

    def test_track_copy_unknown_code_still_succeeds(self, client, test_db):
        response = client.post("/api/coupons/track-copy", json={"couponCode": "NOPE"})
        assert response.status_code == 200
        assert response.json()["recorded"] == 0

    def test_track_copy_malformed(self, client, test_db):
        response = client.post("/api/coupons/track-copy", json={"source": "x"})
        assert response.status_code == 400
        assert response.json()["field"] == "couponCode"

    def test_track_bulk_copy(self, client, test_db, form_coupons, general_coupons):
        response = client.post(
            "/api/coupons/track-bulk-copy",
            json={"couponCodes": ["FORM-A1", "GEN-B2", "UNKNOWN"], "formSlug": "spring-fest"}
        )
        assert response.status_code == 200
        assert response.json()["recorded"] == 2

    def test_track_bulk_copy_requires_codes(self, client, test_db):
        response = client.post("/api/coupons/track-bulk-copy", json={"couponCodes": []})
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["field"] == "couponCodes"


class TestUpload:
    """POST /api/coupons/upload"""

    def test_upload_csv(self, client, admin_headers):
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.csv", b"code,max_uses\nUP-1,2\nUP-2,1\nUP-1,1\n", "text/csv")},
            headers=admin_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["added"] == 2
        assert data["duplicates"] == 1
        assert data["errors"] == []
        assert data["uploadId"]

    def test_upload_xlsx_for_form(self, client, test_db, admin_headers, open_form):
        workbook = Workbook()
        workbook.active.append(["coupon_code", "linkedin_url"])
        workbook.active.append(["XL-1", "https://example.com/redeem/XL-1"])
        buffer = io.BytesIO()
        workbook.save(buffer)

        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.xlsx", buffer.getvalue(), "application/octet-stream")},
            data={"formId": str(open_form.id)},
            headers=admin_headers
        )

        assert response.status_code == 201
        test_db.expire_all()
        coupon = crud.get_coupon_by_code(test_db, "XL-1")
        assert coupon.form_id == open_form.id
        assert coupon.linkedin_url == "https://example.com/redeem/XL-1"

    def test_upload_bad_file(self, client, admin_headers):
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.txt", b"hello", "text/plain")},
            headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["field"] == "file"

    def test_upload_non_utf8_csv(self, client, test_db, admin_headers):
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.csv", b"code\nOK1\n\xff\xfeBAD\n", "text/csv")},
            headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["field"] == "file"
        assert crud.get_coupon_by_code(test_db, "OK1") is None

    def test_upload_bad_form_id(self, client, admin_headers):
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.csv", b"code\nA\n", "text/csv")},
            data={"formId": "not-a-uuid"},
            headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["field"] == "formId"

    def test_upload_unknown_form(self, client, admin_headers):
        import uuid
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.csv", b"code\nA\n", "text/csv")},
            data={"formId": str(uuid.uuid4())},
            headers=admin_headers
        )
        assert response.status_code == 404

    def test_upload_requires_admin(self, client, staff_headers):
        response = client.post(
            "/api/coupons/upload",
            files={"file": ("coupons.csv", b"code\nA\n", "text/csv")},
            headers=staff_headers
        )
        assert response.status_code == 403


class TestAdminCoupons:
    """Listing, stats and status."""

    def test_list_coupons(self, client, admin_headers, open_form, form_coupons, general_coupons):
        response = client.get("/api/coupons", headers=admin_headers)
        assert response.status_code == 200
        assert [c["code"] for c in response.json()] == ["FORM-A1", "FORM-A2", "GEN-B1", "GEN-B2"]

        general = client.get("/api/coupons?general=true", headers=admin_headers).json()
        assert [c["code"] for c in general] == ["GEN-B1", "GEN-B2"]

        by_form = client.get(f"/api/coupons?formId={open_form.id}", headers=admin_headers).json()
        assert [c["code"] for c in by_form] == ["FORM-A1", "FORM-A2"]

    def test_list_available_only(self, client, test_db, admin_headers, form_coupons):
        crud.set_coupon_active(test_db, "FORM-A1", False)
        response = client.get("/api/coupons?available=true", headers=admin_headers)
        assert [c["code"] for c in response.json()] == ["FORM-A2"]

    def test_set_status(self, client, test_db, admin_headers, form_coupons):
        response = client.patch(
            "/api/coupons/form-a1/status", json={"isActive": False}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["isActive"] is False

        test_db.expire_all()
        assert crud.get_coupon_by_code(test_db, "FORM-A1").is_active is False

    def test_set_status_unknown(self, client, admin_headers):
        response = client.patch("/api/coupons/NOPE/status", json={"isActive": True}, headers=admin_headers)
        assert response.status_code == 404

    def test_coupon_stats(self, client, admin_headers, open_form, form_coupons):
        client.post(
            "/api/registrations/submit",
            json={"email": "r1@example.com", "mobile": "9876543201", "formSlug": "spring-fest"}
        )
        client.post("/api/coupons/track-copy", json={"couponCode": "FORM-A1"})

        response = client.get("/api/coupons/FORM-A1/stats", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["used_count"] == 1
        assert data["copy_events"] == 1
        assert data["usages"][0]["user_email"] == "r1@example.com"
