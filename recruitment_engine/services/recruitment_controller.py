"""
Recruitment Controller

Composition root for the engine. Sequences the coupon ledger, the
deduplication matcher and the seed selector at the screens' decision points
and exposes them as coroutines.

Every blocking call (SQLite, scanner) runs in a worker thread via
asyncio.to_thread. Each call is one database transaction, so cancelling the
awaiting task either leaves the transaction fully applied or not applied at
all; there is no partial write to clean up.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..config import Settings, settings as default_settings
from ..database import SessionFactory, session_scope
from ..models.coupon import Coupon
from ..models.facility_config import FacilityConfig
from ..models.seed_recruitment import SeedRecruitment
from ..models.subject import Subject
from .collaborators import Clock, SystemClock
from .coupon_ledger import CouponCheck, CouponLedger, CouponOutcome, PaymentCheck
from .dedup_matcher import DeduplicationMatcher
from .seed_recruitment import SeedRecruitmentSelector
from .stores import CouponStore, FacilityConfigStore, SubjectStore

logger = logging.getLogger(__name__)


# ====================================================================================
# Decision types
# ====================================================================================

class AdmissionStatus(str, Enum):
    ADMITTED = "admitted"
    COUPON_REJECTED = "coupon_rejected"
    COUPON_REQUIRED = "coupon_required"


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of a participant arriving with (or without) a coupon"""
    status: AdmissionStatus
    subject_id: str
    coupon: Optional[CouponCheck] = None

    @property
    def admitted(self) -> bool:
        return self.status == AdmissionStatus.ADMITTED


class ScreeningStatus(str, Enum):
    ENROLLED = "enrolled"
    DUPLICATE = "duplicate"
    CAPTURE_FAILED = "capture_failed"
    FALLBACK_REQUIRED = "fallback_required"


@dataclass(frozen=True)
class ScreeningDecision:
    """Result of one fingerprint screening attempt"""
    status: ScreeningStatus
    subject_id: str
    attempts_remaining: int
    days_remaining: int = 0
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == ScreeningStatus.ENROLLED


@dataclass(frozen=True)
class CompletionResult:
    """Survey completion: the referral coupons handed to the participant"""
    subject_id: str
    coupons: List[Coupon] = field(default_factory=list)


@dataclass(frozen=True)
class ReferralPayment:
    """Coupons of one referrer paid out in a single payment"""
    subject_id: str
    coupons: List[Coupon] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.coupons)


# ====================================================================================
# Controller
# ====================================================================================

class RecruitmentController:
    def __init__(
        self,
        ledger: CouponLedger,
        dedup: DeduplicationMatcher,
        selector: SeedRecruitmentSelector,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.dedup = dedup
        self.selector = selector
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings

        # the capture budget belongs to the participant being screened
        self._screening_subject: Optional[str] = None
        self._screening_lock = threading.Lock()

    # -------------------------
    # Configuration
    # -------------------------

    def _load_config(self, facility_id: Optional[int]) -> FacilityConfig:
        fid = facility_id if facility_id is not None else self.settings.facility_id
        with self.session_factory() as db:
            return FacilityConfigStore(db, self.settings).load(fid)

    async def facility_config(self, facility_id: Optional[int] = None) -> FacilityConfig:
        return await asyncio.to_thread(self._load_config, facility_id)

    def _save_config(self, config: FacilityConfig) -> FacilityConfig:
        with self.session_factory() as db:
            saved = FacilityConfigStore(db, self.settings).save(config)
            db.expunge(saved)
        logger.info("facility config saved facility=%s", config.facility_id)
        return saved

    async def save_facility_config(self, config: FacilityConfig) -> FacilityConfig:
        return await asyncio.to_thread(self._save_config, config)

    # -------------------------
    # Coupons
    # -------------------------

    async def validate_coupon(self, code: str) -> CouponCheck:
        return await asyncio.to_thread(self.ledger.validate, code)

    async def coupons_issued_to(self, entity_id: str) -> List[Coupon]:
        return await asyncio.to_thread(self.ledger.coupons_issued_to, entity_id)

    def _admit(self, subject_id: str, coupon_code: Optional[str], config: FacilityConfig) -> AdmissionDecision:
        code = (coupon_code or "").strip()

        if not code:
            if not config.allow_non_coupon_participants:
                logger.warning("walk-in rejected, facility requires a coupon facility=%s", config.facility_id)
                return AdmissionDecision(AdmissionStatus.COUPON_REQUIRED, subject_id)
            with self.session_factory() as db:
                SubjectStore(db).get_or_create(subject_id, config.facility_id)
            logger.info("walk-in admitted subject=%s", subject_id)
            return AdmissionDecision(AdmissionStatus.ADMITTED, subject_id)

        # redemption and the subject's referral link commit together
        with self.session_factory() as db:
            check = self.ledger.mark_used(code, subject_id, session=db)
            if not check.ok:
                return AdmissionDecision(AdmissionStatus.COUPON_REJECTED, subject_id, check)

            subject = SubjectStore(db).get_or_create(subject_id, config.facility_id)
            subject.referral_coupon_code = check.code
            db.add(subject)

        return AdmissionDecision(AdmissionStatus.ADMITTED, subject_id, check)

    async def admit_participant(
        self,
        subject_id: str,
        coupon_code: Optional[str],
        config: FacilityConfig,
    ) -> AdmissionDecision:
        """
        Arrival. With a coupon: redeem it (the redemption is the commit point;
        a rejected coupon admits nobody). Without: admit only if the facility
        allows walk-ins.
        """
        return await asyncio.to_thread(self._admit, subject_id, coupon_code, config)

    # -------------------------
    # Fingerprint screening
    # -------------------------

    def _begin_screening(self, subject_id: str) -> None:
        if subject_id != self._screening_subject:
            self.dedup.reset_attempts()
            self._screening_subject = subject_id

    def _end_screening(self) -> None:
        self.dedup.reset_attempts()
        self._screening_subject = None

    def _screen(self, subject_id: str, config: FacilityConfig) -> ScreeningDecision:
        with self._screening_lock:
            self._begin_screening(subject_id)
            decision = self._screen_attempt(subject_id, config)
            if decision.status in (ScreeningStatus.ENROLLED, ScreeningStatus.DUPLICATE):
                self._end_screening()
            return decision

    def _screen_attempt(self, subject_id: str, config: FacilityConfig) -> ScreeningDecision:
        if self.dedup.attempts_remaining <= 0:
            return ScreeningDecision(ScreeningStatus.FALLBACK_REQUIRED, subject_id, 0)

        captured = self.dedup.capture()
        if not captured.ok:
            status = ScreeningStatus.FALLBACK_REQUIRED if captured.fallback_required else ScreeningStatus.CAPTURE_FAILED
            return ScreeningDecision(status, subject_id, captured.attempts_remaining, reason=captured.reason)

        decision = self.dedup.check_enrollment(captured.template, config.re_enrollment_days)
        if decision.duplicate:
            return ScreeningDecision(
                ScreeningStatus.DUPLICATE,
                subject_id,
                captured.attempts_remaining,
                days_remaining=decision.days_remaining,
            )

        self.dedup.store(subject_id, captured.template, config.facility_id)
        return ScreeningDecision(ScreeningStatus.ENROLLED, subject_id, captured.attempts_remaining)

    async def screen_participant(self, subject_id: str, config: FacilityConfig) -> ScreeningDecision:
        return await asyncio.to_thread(self._screen, subject_id, config)

    def reset_screening(self) -> None:
        """Operator restarts screening; the next participant gets a full budget."""
        with self._screening_lock:
            self._end_screening()

    # -------------------------
    # Survey completion / consent
    # -------------------------

    def _complete(self, subject_id: str, config: FacilityConfig) -> CompletionResult:
        # completion stamp and referral coupons commit together, once
        with self.session_factory() as db:
            subject = SubjectStore(db).require(subject_id)
            if subject.is_completed():
                return CompletionResult(subject_id, CouponStore(db).issued_to(subject_id))

            subject.completed_at = self.clock.now()
            db.add(subject)
            coupons = self.ledger.issue_for_subject(subject_id, int(config.coupons_to_issue), session=db)

        logger.info("survey completed subject=%s coupons=%s", subject_id, len(coupons))
        return CompletionResult(subject_id, coupons)

    async def complete_survey(self, subject_id: str, config: FacilityConfig) -> CompletionResult:
        return await asyncio.to_thread(self._complete, subject_id, config)

    def _record_consent(
        self,
        subject_id: str,
        consent: bool,
        phone: Optional[str],
        email: Optional[str],
    ) -> Subject:
        with self.session_factory() as db:
            subject = SubjectStore(db).require(subject_id)
            subject.contact_consent = bool(consent)
            if consent:
                subject.contact_phone = (phone or "").strip() or None
                subject.contact_email = (email or "").strip() or None
            else:
                subject.contact_phone = None
                subject.contact_email = None
            db.add(subject)
        return subject

    async def record_contact_consent(
        self,
        subject_id: str,
        consent: bool,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Subject:
        return await asyncio.to_thread(self._record_consent, subject_id, consent, phone, email)

    # -------------------------
    # Referral payments
    # -------------------------

    async def record_coupon_payment(self, code: str, signature: Optional[str] = None) -> PaymentCheck:
        return await asyncio.to_thread(self.ledger.mark_payment_made, code, None, signature)

    def _pay_referrals(self, subject_id: str, signature: Optional[str]) -> ReferralPayment:
        with self.session_factory() as db:
            SubjectStore(db).require(subject_id)
        return ReferralPayment(subject_id, self.ledger.pay_referrals(subject_id, signature))

    async def pay_referrals(self, subject_id: str, signature: Optional[str] = None) -> ReferralPayment:
        """
        Pay a returning participant for every coupon of theirs that brought
        in a recruit and has not been paid yet. Paying twice pays nothing.
        """
        return await asyncio.to_thread(self._pay_referrals, subject_id, signature)

    # -------------------------
    # Seed recruitment
    # -------------------------

    async def should_seed_recruit(self, config: FacilityConfig) -> bool:
        return await asyncio.to_thread(self.selector.is_recruitment_allowed, config)

    async def get_or_select_seed(self, config: FacilityConfig) -> Optional[SeedRecruitment]:
        return await asyncio.to_thread(self.selector.get_or_select_subject, config)

    async def confirm_seed_message_sent(self, recruitment_id: int) -> SeedRecruitment:
        return await asyncio.to_thread(self.selector.mark_message_sent, recruitment_id)

    async def get_seed(self, recruitment_id: int) -> Optional[SeedRecruitment]:
        return await asyncio.to_thread(self.selector.get_recruitment, recruitment_id)

    def seed_message(self, recruitment: SeedRecruitment, config: FacilityConfig) -> str:
        return self.selector.recruitment_message(recruitment, config.facility_name)


def coupon_rejection_reason(check: CouponCheck) -> str:
    if check.outcome == CouponOutcome.ALREADY_USED:
        return "This coupon has already been used"
    if check.outcome == CouponOutcome.EXPIRED:
        return "This coupon has expired"
    if check.outcome == CouponOutcome.INVALID:
        return "Invalid coupon code"
    return ""
