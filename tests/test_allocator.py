"""Tests for coupon allocation.

This module tests:
- First-in-first-out order and form pool before general pool
- Skipping inactive, expired and fully used coupons
- Usage limits under sequential and concurrent load
- Idempotent release
"""

import uuid
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.database import crud
from src.database.models import Base, Coupon, CouponUsage, utcnow
from src.database.session import build_engine
from src.exceptions import StoreError
from src.services.allocator import (
    Allocated, CouponAllocator, ExactCode, Exhausted, Requester
)


def usage_count(db, coupon_id):
    return db.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id))


@pytest.fixture
def allocator():
    return CouponAllocator(batch_size=5)


@pytest.fixture
def requester():
    return Requester(email="student@example.com", mobile="9876543210", name="Student")


class TestAllocationOrder:
    """Which coupon gets handed out."""

    def test_oldest_form_coupon_first(self, test_db, allocator, requester, open_form, form_coupons):
        """Coupons are allocated in insertion order."""
        first = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        second = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())

        assert isinstance(first, Allocated)
        assert first.code == "FORM-A1"
        assert first.pool == "form"
        assert second.code == "FORM-A2"

    def test_form_pool_before_general_pool(
        self, test_db, allocator, requester, open_form, general_coupons, form_coupons
    ):
        """General coupons are only used once the form's own coupons are gone."""
        codes = [
            allocator.allocate(test_db, open_form.id, requester, uuid.uuid4()).code
            for _ in range(3)
        ]
        assert codes == ["FORM-A1", "FORM-A2", "GEN-B1"]

        result = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert result.code == "GEN-B2"
        assert result.pool == "general"

    def test_coupons_of_other_forms_are_not_used(
        self, test_db, allocator, requester, open_form, form_factory, coupon_factory
    ):
        """A form never receives another form's coupons."""
        other = form_factory("other-form")
        coupon_factory(["OTHER-1"], form_id=other.id)

        result = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert isinstance(result, Exhausted)
        assert result.form_id == open_form.id

    def test_inactive_coupon_skipped(self, test_db, allocator, requester, open_form, form_coupons):
        """Deactivated coupons are never allocated."""
        crud.set_coupon_active(test_db, "FORM-A1", False)

        result = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert result.code == "FORM-A2"

    def test_expired_coupon_skipped(self, test_db, allocator, requester, open_form, coupon_factory):
        """Coupons past their expiry date are never allocated."""
        coupon_factory(["OLD-1"], form_id=open_form.id, expiry_date=utcnow() - timedelta(hours=1))
        coupon_factory(["NEW-1"], form_id=open_form.id, expiry_date=utcnow() + timedelta(days=1))

        result = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert result.code == "NEW-1"

    def test_exact_code_predicate(self, test_db, allocator, requester, open_form, form_coupons):
        """An explicit predicate restricts allocation to one code."""
        result = allocator.allocate(
            test_db, open_form.id, requester, uuid.uuid4(), predicates=[ExactCode("form-a2")]
        )
        assert result.code == "FORM-A2"
        assert result.pool == "exact"

    def test_no_form_uses_general_pool(self, test_db, allocator, requester, general_coupons):
        """Without a form only the general pool is consulted."""
        result = allocator.allocate(test_db, None, requester, uuid.uuid4())
        assert result.code == "GEN-B1"

    def test_allocation_records_requester(self, test_db, allocator, requester, open_form, form_coupons):
        """The usage entry carries the requester's identity."""
        registration_id = uuid.uuid4()
        result = allocator.allocate(test_db, open_form.id, requester, registration_id)

        usage = crud.get_coupon_usage(test_db, result.coupon_id, registration_id)
        assert usage is not None
        assert usage.user_email == "student@example.com"
        assert usage.user_mobile == "9876543210"
        assert usage.form_id == open_form.id
        assert usage.redeemed_at is None


class TestUsageLimits:
    """A coupon is never handed out more often than max_uses."""

    def test_multi_use_coupon_exhausts_at_limit(
        self, test_db, allocator, requester, open_form, coupon_factory
    ):
        """K uses succeed and the K+1th attempt reports exhaustion."""
        coupon = coupon_factory(["MULTI"], form_id=open_form.id, max_uses=3)[0]

        results = [
            allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
            for _ in range(4)
        ]

        assert [isinstance(r, Allocated) for r in results] == [True, True, True, False]
        assert isinstance(results[3], Exhausted)

        test_db.expire_all()
        assert test_db.get(Coupon, coupon.id).used_count == 3
        assert usage_count(test_db, coupon.id) == 3

    def test_reserve_returns_false_when_full(self, test_db, open_form, coupon_factory):
        """The conditional update refuses a coupon with no uses left."""
        coupon = coupon_factory(["ONCE"], form_id=open_form.id)[0]

        assert crud.reserve_coupon(test_db, coupon.id, uuid.uuid4()) is True
        assert crud.reserve_coupon(test_db, coupon.id, uuid.uuid4()) is False

        test_db.expire_all()
        assert test_db.get(Coupon, coupon.id).used_count == 1
        assert usage_count(test_db, coupon.id) == 1

    def test_stale_candidate_is_skipped(
        self, test_db, allocator, requester, open_form, coupon_factory, monkeypatch
    ):
        """A candidate taken by someone else moves allocation to the next one."""
        taken, free = coupon_factory(["TAKEN", "FREE"], form_id=open_form.id)
        crud.reserve_coupon(test_db, taken.id, uuid.uuid4())

        real_find = crud.find_eligible_coupon_ids
        calls = []

        def stale_find(db, predicate, limit=10):
            calls.append(predicate)
            if len(calls) == 1:
                return [taken.id, free.id]
            return real_find(db, predicate, limit=limit)

        monkeypatch.setattr(crud, "find_eligible_coupon_ids", stale_find)

        result = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert result.code == "FREE"

    def test_store_failure_raises_store_error(
        self, test_db, allocator, requester, open_form, form_coupons, monkeypatch
    ):
        """Database failures surface as StoreError."""
        def broken(*args, **kwargs):
            raise SQLAlchemyError("connection lost")

        monkeypatch.setattr(crud, "reserve_coupon", broken)

        with pytest.raises(StoreError):
            allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())


class TestRelease:
    """Returning reserved uses."""

    def test_release_frees_the_use(self, test_db, allocator, requester, open_form, form_coupons):
        """A released use can be allocated again."""
        registration_id = uuid.uuid4()
        result = allocator.allocate(test_db, open_form.id, requester, registration_id)

        assert allocator.release(test_db, result.code, registration_id) is True

        test_db.expire_all()
        coupon = test_db.get(Coupon, result.coupon_id)
        assert coupon.used_count == 0
        assert crud.get_coupon_usage(test_db, coupon.id, registration_id) is None

        again = allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())
        assert again.code == result.code

    def test_release_is_idempotent(self, test_db, allocator, requester, open_form, form_coupons):
        """Releasing twice changes nothing the second time."""
        registration_id = uuid.uuid4()
        result = allocator.allocate(test_db, open_form.id, requester, registration_id)
        allocator.allocate(test_db, open_form.id, requester, uuid.uuid4())

        assert allocator.release(test_db, result.code, registration_id) is True
        assert allocator.release(test_db, result.code, registration_id) is False

        test_db.expire_all()
        assert test_db.get(Coupon, result.coupon_id).used_count == 0

    def test_release_of_other_registration_does_nothing(
        self, test_db, allocator, requester, open_form, coupon_factory
    ):
        """Only the registration holding a use can release it."""
        coupon = coupon_factory(["SHARED"], form_id=open_form.id, max_uses=2)[0]
        holder = uuid.uuid4()
        allocator.allocate(test_db, open_form.id, requester, holder)

        assert allocator.release(test_db, "SHARED", uuid.uuid4()) is False

        test_db.expire_all()
        assert test_db.get(Coupon, coupon.id).used_count == 1

    def test_release_unknown_code(self, test_db, allocator):
        """Releasing a code that does not exist returns False."""
        assert allocator.release(test_db, "NOPE", uuid.uuid4()) is False


class TestConcurrentAllocation:
    """Many registrations racing for the same coupons."""

    @pytest.fixture
    def race_db(self, tmp_path):
        """A file-backed database with an open form, shared by worker threads."""
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(bind=engine)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        with SessionLocal() as setup:
            form = crud.create_form(
                setup,
                "race",
                activation=utcnow() - timedelta(days=1),
                deactivation=utcnow() + timedelta(days=1)
            )
            form_id = form.id
        yield SessionLocal, form_id

        engine.dispose()

    def run_allocations(self, SessionLocal, form_id, workers=50):
        allocator = CouponAllocator()

        def register(i):
            db = SessionLocal()
            try:
                return allocator.allocate(
                    db, form_id, Requester(email=f"user{i}@example.com"), uuid.uuid4()
                )
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(register, range(workers)))

    def test_parallel_requests_never_exceed_max_uses(self, race_db):
        """50 concurrent allocations against 20 uses yield exactly 20 coupons."""
        SessionLocal, form_id = race_db
        with SessionLocal() as setup:
            crud.create_coupon(setup, "RACE-1", form_id=form_id, max_uses=15)
            crud.create_coupon(setup, "RACE-GEN", max_uses=5)

        results = self.run_allocations(SessionLocal, form_id)

        allocated = [r for r in results if isinstance(r, Allocated)]
        assert len(allocated) == 20
        assert len([r for r in results if isinstance(r, Exhausted)]) == 30
        assert sum(1 for r in allocated if r.code == "RACE-1") == 15
        assert sum(1 for r in allocated if r.code == "RACE-GEN") == 5

        check = SessionLocal()
        try:
            for coupon in check.scalars(select(Coupon)):
                assert coupon.used_count == coupon.max_uses
                assert usage_count(check, coupon.id) == coupon.max_uses
        finally:
            check.close()

    def test_each_single_use_coupon_goes_to_one_caller(self, race_db):
        """50 concurrent allocations against 20 single-use coupons: every code exactly once."""
        SessionLocal, form_id = race_db
        form_codes = [f"SOLO-{n:02d}" for n in range(12)]
        general_codes = [f"SOLO-GEN-{n:02d}" for n in range(8)]
        with SessionLocal() as setup:
            for code in form_codes:
                crud.create_coupon(setup, code, form_id=form_id, max_uses=1)
            for code in general_codes:
                crud.create_coupon(setup, code, max_uses=1)

        results = self.run_allocations(SessionLocal, form_id)

        codes = [r.code for r in results if isinstance(r, Allocated)]
        assert len(codes) == len(set(codes)) == 20
        assert set(codes) == set(form_codes) | set(general_codes)
        assert all(isinstance(r, Exhausted) for r in results if not isinstance(r, Allocated))
        assert len(results) - len(codes) == 30

        check = SessionLocal()
        try:
            for coupon in check.scalars(select(Coupon)):
                assert coupon.used_count == 1
                assert usage_count(check, coupon.id) == 1
        finally:
            check.close()
