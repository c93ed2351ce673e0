from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Generator, Optional, Set

from ..config import Settings, settings as default_settings
from ..database import SessionFactory, session_scope
from ..models.biometric_record import BiometricRecord, template_digest
from .collaborators import BiometricDevice, Clock, SystemClock, TemplateMatcher
from .exceptions import CaptureAttemptsExhaustedError, EnrollmentNotScreenedError
from .stores import BiometricStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    """
    Outcome of one operator-triggered capture.

    - template is None when the scan failed (device not ready, poor quality).
    - fallback_required flips once the attempt budget is spent; the UI then
      switches to credential-based verification.
    """
    template: Optional[bytes]
    attempts_remaining: int
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.template is not None

    @property
    def fallback_required(self) -> bool:
        return self.template is None and self.attempts_remaining <= 0


@dataclass(frozen=True)
class DedupDecision:
    """
    Result of the re-enrollment check. A duplicate is a decision, not an error:
    days_remaining says when this person may enroll again.
    """
    duplicate: bool
    match: Optional[BiometricRecord] = None
    days_remaining: int = 0


class DeduplicationMatcher:
    """
    Stops the same person enrolling twice inside `re_enrollment_days`.

    There is no index over fingerprint templates, so matching is a linear scan
    with the vendor matcher. Only records enrolled inside the cooldown window
    are scanned, which bounds the work by recent enrollment volume rather than
    by the full history.
    """

    def __init__(
        self,
        device: BiometricDevice,
        matcher: TemplateMatcher,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        s = settings or default_settings
        self.device = device
        self.matcher = matcher
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.max_attempts = int(max_attempts if max_attempts is not None else s.capture_attempts)

        self._attempts_remaining = self.max_attempts
        self._cleared: Set[str] = set()
        # one scanner per device: captures never overlap
        self._device_lock = threading.Lock()

    @property
    def attempts_remaining(self) -> int:
        return self._attempts_remaining

    def reset_attempts(self) -> None:
        """Operator starts a new screening session."""
        self._attempts_remaining = self.max_attempts
        self._cleared.clear()

    # -------------------------
    # Hardware
    # -------------------------

    @contextmanager
    def _acquired_device(self) -> Generator[bool, None, None]:
        """
        Scoped device handle: initialize on entry, close on every exit path
        (capture failure, exceptions, task cancellation).
        """
        with self._device_lock:
            ready = False
            try:
                ready = bool(self.device.initialize())
                yield ready
            finally:
                try:
                    self.device.close()
                except Exception:
                    logger.exception("biometric device close failed")

    def _fail(self, reason: str) -> CaptureResult:
        self._attempts_remaining = max(0, self._attempts_remaining - 1)
        logger.warning(
            "fingerprint capture failed reason=%s attempts_remaining=%s",
            reason,
            self._attempts_remaining,
        )
        return CaptureResult(template=None, attempts_remaining=self._attempts_remaining, reason=reason)

    def capture(self) -> CaptureResult:
        """
        One capture attempt. Failures spend the budget; there is no automatic
        retry, the operator presses the button again.
        """
        if self._attempts_remaining <= 0:
            raise CaptureAttemptsExhaustedError(
                "Fingerprint capture attempts exhausted; use the alternative verification path"
            )

        with self._acquired_device() as ready:
            if not ready:
                return self._fail("device_not_ready")
            template = self.device.capture()

        if not template:
            return self._fail("capture_failed")

        return CaptureResult(template=bytes(template), attempts_remaining=self._attempts_remaining)

    # -------------------------
    # Matching
    # -------------------------

    def matches_within_cooldown(self, candidate: bytes, cooldown_days: int) -> Optional[BiometricRecord]:
        """
        First record enrolled in [now - cooldown_days, now] that the vendor
        matcher accepts, newest first; None when nobody matches.
        """
        now = self.clock.now()
        since = now - timedelta(days=int(cooldown_days))

        with self.session_factory() as db:
            for record in BiometricStore(db).enrolled_between(since, now):
                if self.matcher.matches(candidate, record.template):
                    db.expunge(record)
                    return record
        return None

    def check_enrollment(self, candidate: bytes, cooldown_days: int) -> DedupDecision:
        match = self.matches_within_cooldown(candidate, cooldown_days)
        if match is None:
            self._cleared.add(template_digest(candidate))
            return DedupDecision(duplicate=False)

        days_since = (self.clock.now() - match.enrolled_at).days
        # a match exactly at the window edge still has to wait out the day
        days_remaining = max(1, int(cooldown_days) - days_since)
        logger.warning(
            "duplicate enrollment detected record_id=%s days_remaining=%s",
            match.id,
            days_remaining,
        )
        return DedupDecision(duplicate=True, match=match, days_remaining=days_remaining)

    def store(
        self,
        owner_entity_id: str,
        template: bytes,
        facility_id: Optional[int] = None,
    ) -> BiometricRecord:
        """
        Persist one immutable record. Only templates that passed
        check_enrollment on this matcher may be stored, so a capture can never
        be written twice or written over a match.
        """
        digest = template_digest(template)
        if digest not in self._cleared:
            raise EnrollmentNotScreenedError("Template was not cleared by a duplicate check")

        record = BiometricRecord(
            template=bytes(template),
            template_hash=digest,
            enrolled_at=self.clock.now(),
            owner_entity_id=owner_entity_id,
            facility_id=facility_id,
        )
        with self.session_factory() as db:
            BiometricStore(db).insert(record)

        self._cleared.discard(digest)
        logger.info("fingerprint enrolled owner=%s facility=%s", owner_entity_id, facility_id)
        return record
