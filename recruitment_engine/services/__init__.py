# recruitment_engine/services/__init__.py
# Wiring for the engine: one ledger shared by the selector and the controller.

from __future__ import annotations

import random
from typing import Optional

from ..config import Settings, settings as default_settings
from ..database import SessionFactory, session_scope
from .collaborators import (
    BiometricDevice,
    Clock,
    ExactTemplateMatcher,
    SystemClock,
    TemplateMatcher,
    build_biometric_device,
)
from .coupon_ledger import CouponCheck, CouponLedger, CouponOutcome, PaymentCheck, PaymentOutcome
from .dedup_matcher import CaptureResult, DedupDecision, DeduplicationMatcher
from .recruitment_controller import (
    AdmissionDecision,
    AdmissionStatus,
    CompletionResult,
    RecruitmentController,
    ReferralPayment,
    ScreeningDecision,
    ScreeningStatus,
)
from .seed_recruitment import SeedRecruitmentSelector


def build_controller(
    *,
    session_factory: SessionFactory = session_scope,
    device: Optional[BiometricDevice] = None,
    matcher: Optional[TemplateMatcher] = None,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
    settings: Optional[Settings] = None,
) -> RecruitmentController:
    s = settings or default_settings
    clk = clock or SystemClock()

    ledger = CouponLedger(session_factory=session_factory, clock=clk, rng=rng, settings=s)
    dedup = DeduplicationMatcher(
        device or build_biometric_device(s.biometric_device),
        matcher or ExactTemplateMatcher(),
        session_factory=session_factory,
        clock=clk,
        settings=s,
    )
    selector = SeedRecruitmentSelector(ledger, session_factory=session_factory, clock=clk, rng=rng)
    return RecruitmentController(
        ledger,
        dedup,
        selector,
        session_factory=session_factory,
        clock=clk,
        settings=s,
    )


__all__ = [
    "AdmissionDecision",
    "AdmissionStatus",
    "CaptureResult",
    "CompletionResult",
    "CouponCheck",
    "CouponLedger",
    "CouponOutcome",
    "DedupDecision",
    "DeduplicationMatcher",
    "PaymentCheck",
    "PaymentOutcome",
    "RecruitmentController",
    "ReferralPayment",
    "ScreeningDecision",
    "ScreeningStatus",
    "SeedRecruitmentSelector",
    "build_controller",
]
