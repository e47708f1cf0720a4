"""Tests for maintenance tasks, configuration and logging setup."""

import json
import logging
import uuid
import pytest
from sqlalchemy import update

from src.config import Settings, load_config_yaml
from src.database import crud
from src.database.models import Coupon
from src.logging_config import ServiceJsonFormatter, build_logging_config
from src.tasks.check_coupons import find_mismatched_coupons, fix_coupon_counts


class TestCouponAudit:
    """src.tasks.check_coupons"""

    def test_consistent_counters(self, test_db, form_coupons):
        crud.reserve_coupon(test_db, form_coupons[0].id, uuid.uuid4())
        assert find_mismatched_coupons(test_db) == []

    def test_drift_detected_and_fixed(self, test_db, coupon_factory):
        coupon = coupon_factory(["DRIFT"], max_uses=5)[0]
        coupon_id = coupon.id
        crud.reserve_coupon(test_db, coupon_id, uuid.uuid4())
        test_db.execute(update(Coupon).where(Coupon.id == coupon_id).values(used_count=3))
        test_db.commit()

        mismatches = find_mismatched_coupons(test_db)
        assert mismatches == [(coupon_id, "DRIFT", 3, 1)]

        assert fix_coupon_counts(test_db, mismatches) == 1
        test_db.expire_all()
        assert test_db.get(Coupon, coupon_id).used_count == 1
        assert find_mismatched_coupons(test_db) == []


class TestSettings:
    """Configuration validation."""

    def test_uniqueness_scope_normalized(self):
        assert Settings(registration_uniqueness_scope=" GLOBAL ").registration_uniqueness_scope == "global"

    def test_uniqueness_scope_rejected(self):
        with pytest.raises(ValueError):
            Settings(registration_uniqueness_scope="college")

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(allocation_batch_size=0)

    def test_weak_secret_refused_in_production(self):
        with pytest.raises(ValueError):
            Settings(environment="production", jwt_secret_key="your-secret-key-change-this-in-production")

    def test_missing_yaml_is_empty(self, tmp_path):
        assert load_config_yaml(str(tmp_path / "absent.yaml")) == {}

    def test_yaml_loaded(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("registration:\n  uniqueness_scope: global\n")
        assert load_config_yaml(str(path)) == {"registration": {"uniqueness_scope": "global"}}


class TestLogging:
    """Logging configuration."""

    def test_json_formatter_adds_metadata(self):
        formatter = ServiceJsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        record = logging.LogRecord("src.services.allocator", logging.INFO, __file__, 1, "allocated %s", ("A1",), None)

        data = json.loads(formatter.format(record))

        assert data["message"] == "allocated A1"
        assert data["level"] == "INFO"
        assert data["logger"] == "src.services.allocator"
        assert data["app"] == "couponroster"

    def test_config_selects_formatter(self):
        assert build_logging_config("debug", True)["handlers"]["console"]["formatter"] == "json"
        config = build_logging_config("debug", False)
        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["src"]["level"] == "DEBUG"


class TestOrphanedReservations:
    """Reservations whose registration was never stored."""

    def test_orphan_found_and_released(self, test_db, open_form, form_coupons):
        from datetime import timedelta
        from src.database.models import CouponUsage, utcnow
        from src.services.registration import RegistrationService, RegistrationSubmission
        from src.tasks.check_coupons import find_orphaned_reservations, release_orphans

        RegistrationService().submit(
            test_db,
            RegistrationSubmission(email="kept@example.com", mobile="9876543210", form_slug="spring-fest")
        )
        orphan_id = uuid.uuid4()
        crud.reserve_coupon(test_db, form_coupons[1].id, orphan_id)
        test_db.execute(
            update(CouponUsage).values(used_at=utcnow() - timedelta(hours=1))
        )
        test_db.commit()

        orphans = find_orphaned_reservations(test_db, older_than_minutes=15)
        assert orphans == [(form_coupons[1].id, "FORM-A2", orphan_id)]

        assert release_orphans(test_db, orphans) == 1
        test_db.expire_all()
        assert crud.get_coupon_by_code(test_db, "FORM-A2").used_count == 0
        assert crud.get_coupon_by_code(test_db, "FORM-A1").used_count == 1
        assert find_orphaned_reservations(test_db) == []

    def test_recent_reservations_ignored(self, test_db, form_coupons):
        from src.tasks.check_coupons import find_orphaned_reservations

        crud.reserve_coupon(test_db, form_coupons[0].id, uuid.uuid4())
        assert find_orphaned_reservations(test_db, older_than_minutes=15) == []
