"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path: a file (not :memory:) so
worker threads and the test body see the same database.
"""
import os

# The module-level engine must not touch ./data during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import random
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from recruitment_engine.config import Settings
from recruitment_engine.database import build_engine, init_db, make_session_scope
from recruitment_engine.models.biometric_record import BiometricRecord, template_digest
from recruitment_engine.models.facility_config import FacilityConfig
from recruitment_engine.models.subject import Subject
from recruitment_engine.services.coupon_ledger import CouponLedger


class FixedClock:
    """Clock the test moves by hand"""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'recruitment.sqlite'}", busy_timeout_ms=10000)
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def scope(engine):
    return make_session_scope(engine)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings():
    return Settings().model_copy(
        update={
            "facility_id": 1,
            "facility_name": "Clinic A",
            "coupon_code_length": 8,
            "coupon_generation_attempts": 10,
            "coupon_expiry_days": None,
            "coupons_to_issue": 3,
            "allow_non_coupon_participants": True,
            "re_enrollment_days": 90,
            "capture_attempts": 3,
            "seed_recruitment_active": False,
            "seed_contact_rate_days": 7,
            "seed_window_min_days": 0,
            "seed_window_max_days": 730,
        }
    )


@pytest.fixture
def ledger(scope, clock, test_settings):
    return CouponLedger(session_factory=scope, clock=clock, rng=random.Random(7), settings=test_settings)


@pytest.fixture
def seed_config():
    """Facility with seed recruitment switched on"""
    return FacilityConfig(
        facility_id=1,
        facility_name="Clinic A",
        allow_non_coupon_participants=True,
        coupons_to_issue=3,
        re_enrollment_days=90,
        seed_recruitment_active=True,
        seed_contact_rate_days=7,
        seed_window_min_days=0,
        seed_window_max_days=730,
    )


@pytest.fixture
def add_subject(scope, clock):
    """Insert a subject; completed_days_ago=None leaves the survey unfinished"""

    def _add(
        subject_id: str,
        *,
        completed_days_ago: Optional[int] = 10,
        consent: bool = True,
        phone: Optional[str] = "+15550001",
        email: Optional[str] = None,
        facility_id: Optional[int] = 1,
    ) -> Subject:
        now = clock.now()
        subject = Subject(
            id=subject_id,
            facility_id=facility_id,
            started_at=now - timedelta(days=(completed_days_ago or 0) + 1),
            completed_at=None if completed_days_ago is None else now - timedelta(days=completed_days_ago),
            contact_consent=consent,
            contact_phone=phone,
            contact_email=email,
        )
        with scope() as db:
            db.add(subject)
        return subject

    return _add


@pytest.fixture
def add_enrollment(scope, clock):
    """Insert a fingerprint record enrolled `days_ago` before the clock"""

    def _add(template: bytes, days_ago: float, owner: str = "S-OLD") -> BiometricRecord:
        record = BiometricRecord(
            template=template,
            template_hash=template_digest(template),
            enrolled_at=clock.now() - timedelta(days=days_ago),
            owner_entity_id=owner,
            facility_id=1,
        )
        with scope() as db:
            db.add(record)
        return record

    return _add
