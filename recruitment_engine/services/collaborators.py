from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Optional, Protocol

from ..models.timestamps import utcnow

logger = logging.getLogger(__name__)


# -------------------------
# Capability interfaces
# -------------------------

class Clock(Protocol):
    def now(self) -> datetime:
        ...


class BiometricDevice(Protocol):
    """
    Fingerprint scanner driver. capture() returns an opaque template or None
    (low-quality scan, finger lifted, device not ready).
    """

    def initialize(self) -> bool:
        ...

    def capture(self) -> Optional[bytes]:
        ...

    def close(self) -> None:
        ...


class TemplateMatcher(Protocol):
    """Vendor similarity decision; the threshold is internal to it."""

    def matches(self, a: bytes, b: bytes) -> bool:
        ...


# -------------------------
# Default implementations
# -------------------------

class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class MockBiometricDevice:
    """
    Stand-in scanner for development tablets and emulators.

    Each capture returns a fresh random template, so no two captures match
    unless `fixed_template` is set (useful to exercise duplicate detection).
    """

    PREFIX = b"MOCK_FP_"

    def __init__(self, fixed_template: Optional[bytes] = None):
        self.fixed_template = fixed_template
        self._initialized = False

    def initialize(self) -> bool:
        self._initialized = True
        logger.debug("mock biometric device initialized")
        return True

    def capture(self) -> Optional[bytes]:
        if not self._initialized:
            logger.error("mock biometric device capture before initialize")
            return None
        if self.fixed_template is not None:
            return self.fixed_template
        return self.PREFIX + os.urandom(16).hex().encode("ascii")

    def close(self) -> None:
        self._initialized = False


class ExactTemplateMatcher:
    """Byte-equality matcher, paired with MockBiometricDevice."""

    def matches(self, a: bytes, b: bytes) -> bool:
        return bytes(a) == bytes(b)


def build_biometric_device(kind: str) -> BiometricDevice:
    k = (kind or "").strip().lower()
    if k in ("", "mock"):
        return MockBiometricDevice()
    raise ValueError(f"Unsupported BIOMETRIC_DEVICE: {kind!r} (vendor drivers are plugged in by the host app)")
