"""
Tests for fingerprint deduplication.

Covers:
- Cooldown window matching and days_remaining
- Capture attempt budget and fallback
- Device lifecycle (always closed)
- The store guard (only screened templates are persisted)
"""
from typing import List, Optional

import pytest

from recruitment_engine.services.collaborators import ExactTemplateMatcher, MockBiometricDevice
from recruitment_engine.services.dedup_matcher import DeduplicationMatcher
from recruitment_engine.services.exceptions import (
    CaptureAttemptsExhaustedError,
    EnrollmentNotScreenedError,
)
from recruitment_engine.services.stores import BiometricStore


class ScriptedDevice:
    """Scanner double returning queued captures and recording its lifecycle"""

    def __init__(self, captures: List[Optional[bytes]], ready: bool = True, error: Optional[Exception] = None):
        self.captures = list(captures)
        self.ready = ready
        self.error = error
        self.initialized = 0
        self.closed = 0

    def initialize(self) -> bool:
        self.initialized += 1
        return self.ready

    def capture(self) -> Optional[bytes]:
        if self.error is not None:
            raise self.error
        return self.captures.pop(0) if self.captures else None

    def close(self) -> None:
        self.closed += 1


def _matcher(device, scope, clock, max_attempts=3) -> DeduplicationMatcher:
    return DeduplicationMatcher(
        device,
        ExactTemplateMatcher(),
        session_factory=scope,
        clock=clock,
        max_attempts=max_attempts,
    )


class TestCooldownMatching:
    """Tests for matches_within_cooldown / check_enrollment"""

    def test_enrolled_30_days_ago_with_90_day_cooldown(self, scope, clock, add_enrollment):
        """Duplicate with 60 days left"""
        add_enrollment(b"FP-1", days_ago=30)
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        decision = dedup.check_enrollment(b"FP-1", 90)

        assert decision.duplicate
        assert decision.days_remaining == 60
        assert decision.match.owner_entity_id == "S-OLD"

    def test_outside_cooldown_does_not_match(self, scope, clock, add_enrollment):
        add_enrollment(b"FP-1", days_ago=91)
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        assert dedup.matches_within_cooldown(b"FP-1", 90) is None
        assert not dedup.check_enrollment(b"FP-1", 90).duplicate

    def test_window_boundary_is_inclusive(self, scope, clock, add_enrollment):
        """enrolled_at == now - cooldown still matches and still has a day to wait"""
        add_enrollment(b"FP-1", days_ago=90)
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        decision = dedup.check_enrollment(b"FP-1", 90)

        assert decision.duplicate
        assert decision.days_remaining == 1

    def test_different_template_does_not_match(self, scope, clock, add_enrollment):
        add_enrollment(b"FP-1", days_ago=1)
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        assert dedup.matches_within_cooldown(b"FP-2", 90) is None

    def test_newest_match_wins(self, scope, clock, add_enrollment):
        """With several matches, days_remaining is counted from the latest"""
        add_enrollment(b"FP-1", days_ago=80, owner="S-A")
        add_enrollment(b"FP-1", days_ago=10, owner="S-B")
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        decision = dedup.check_enrollment(b"FP-1", 90)

        assert decision.match.owner_entity_id == "S-B"
        assert decision.days_remaining == 80

    def test_partial_days_round_down(self, scope, clock, add_enrollment):
        """Only whole days since enrollment count"""
        add_enrollment(b"FP-1", days_ago=30.5)
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        assert dedup.check_enrollment(b"FP-1", 90).days_remaining == 60


class TestCapture:
    """Tests for capture"""

    def test_successful_capture_keeps_budget(self, scope, clock):
        device = ScriptedDevice([b"FP-1"])
        dedup = _matcher(device, scope, clock)

        result = dedup.capture()

        assert result.ok
        assert result.template == b"FP-1"
        assert result.attempts_remaining == 3
        assert device.closed == 1

    def test_failed_captures_spend_budget_then_fallback(self, scope, clock):
        device = ScriptedDevice([None, None, None])
        dedup = _matcher(device, scope, clock)

        results = [dedup.capture() for _ in range(3)]

        assert [r.attempts_remaining for r in results] == [2, 1, 0]
        assert [r.reason for r in results] == ["capture_failed"] * 3
        assert not results[1].fallback_required
        assert results[2].fallback_required
        assert device.closed == 3

    def test_capture_after_budget_raises(self, scope, clock):
        dedup = _matcher(ScriptedDevice([]), scope, clock, max_attempts=1)
        dedup.capture()

        with pytest.raises(CaptureAttemptsExhaustedError):
            dedup.capture()

    def test_reset_attempts(self, scope, clock):
        dedup = _matcher(ScriptedDevice([None, b"FP-1"]), scope, clock, max_attempts=1)
        assert dedup.capture().fallback_required

        dedup.reset_attempts()

        assert dedup.attempts_remaining == 1
        assert dedup.capture().ok

    def test_device_not_ready(self, scope, clock):
        device = ScriptedDevice([b"FP-1"], ready=False)
        dedup = _matcher(device, scope, clock)

        result = dedup.capture()

        assert not result.ok
        assert result.reason == "device_not_ready"
        assert result.attempts_remaining == 2
        assert device.closed == 1

    def test_device_closed_when_capture_raises(self, scope, clock):
        device = ScriptedDevice([], error=RuntimeError("usb unplugged"))
        dedup = _matcher(device, scope, clock)

        with pytest.raises(RuntimeError):
            dedup.capture()

        assert device.initialized == 1
        assert device.closed == 1

    def test_mock_device_fixed_template(self, scope, clock):
        dedup = _matcher(MockBiometricDevice(fixed_template=b"MOCK_FP_X"), scope, clock)

        assert dedup.capture().template == b"MOCK_FP_X"

    def test_mock_device_random_templates_differ(self, scope, clock):
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        first, second = dedup.capture().template, dedup.capture().template

        assert first.startswith(b"MOCK_FP_")
        assert first != second


class TestStore:
    """Tests for store"""

    def test_store_requires_screening(self, scope, clock):
        dedup = _matcher(MockBiometricDevice(), scope, clock)

        with pytest.raises(EnrollmentNotScreenedError):
            dedup.store("S-1", b"FP-1")

    def test_store_after_clear_check(self, scope, clock):
        dedup = _matcher(MockBiometricDevice(), scope, clock)
        assert not dedup.check_enrollment(b"FP-1", 90).duplicate

        record = dedup.store("S-1", b"FP-1", facility_id=1)

        assert record.owner_entity_id == "S-1"
        assert record.enrolled_at == clock.now()
        assert dedup.check_enrollment(b"FP-1", 90).duplicate

    def test_store_twice_rejected(self, scope, clock):
        dedup = _matcher(MockBiometricDevice(), scope, clock)
        dedup.check_enrollment(b"FP-1", 90)
        dedup.store("S-1", b"FP-1")

        with pytest.raises(EnrollmentNotScreenedError):
            dedup.store("S-1", b"FP-1")

    def test_duplicate_is_not_cleared_for_store(self, scope, clock, add_enrollment):
        add_enrollment(b"FP-1", days_ago=5)
        dedup = _matcher(MockBiometricDevice(), scope, clock)
        dedup.check_enrollment(b"FP-1", 90)

        with pytest.raises(EnrollmentNotScreenedError):
            dedup.store("S-2", b"FP-1")

        now = clock.now()
        with scope() as db:
            records = list(BiometricStore(db).enrolled_between(now.replace(year=now.year - 1), now))
        assert len(records) == 1
