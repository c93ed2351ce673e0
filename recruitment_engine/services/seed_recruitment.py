from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..database import SessionFactory, session_scope
from ..models.facility_config import FacilityConfig
from ..models.seed_recruitment import ContactChannel, SeedRecruitment
from ..models.subject import Subject
from ..models.timestamps import as_utc
from .collaborators import Clock, SystemClock
from .coupon_ledger import CouponLedger
from .exceptions import RecruitmentAlreadySentError, RecruitmentNotFoundError
from .stores import RecruitmentStore, SubjectStore

logger = logging.getLogger(__name__)


SEED_ENTITY_PREFIX = "SEED_"


def seed_entity_id(subject_id: str) -> str:
    """Entity id a seed coupon is issued to (distinct from referral coupons)."""
    return f"{SEED_ENTITY_PREFIX}{subject_id}"


@dataclass(frozen=True)
class EligibilityWindow:
    """
    Date bounds for one eligibility evaluation.

    - completed_from / completed_to: survey completion window
      [now - window_max_days, now - window_min_days]
    - contacted_after: anyone contacted after this instant is throttled
    """
    completed_from: datetime
    completed_to: datetime
    contacted_after: datetime

    @classmethod
    def for_config(cls, config: FacilityConfig, now: datetime) -> "EligibilityWindow":
        return cls(
            completed_from=now - timedelta(days=int(config.seed_window_max_days)),
            completed_to=now - timedelta(days=int(config.seed_window_min_days)),
            contacted_after=now - timedelta(days=int(config.seed_contact_rate_days)),
        )


def _contact_for(subject: Subject) -> tuple[ContactChannel, str]:
    phone = (subject.contact_phone or "").strip()
    if phone:
        return ContactChannel.PHONE, phone
    return ContactChannel.EMAIL, (subject.contact_email or "").strip()


class SeedRecruitmentSelector:
    """
    RDS seed selection: decides whether to re-contact a past participant, picks
    one uniformly at random, and mints the coupon they will bring back.

    Facility invariant: at most one active (unsent) recruitment. The partial
    unique index on seed_recruitments enforces it; this class only has to
    handle losing the race.
    """

    def __init__(
        self,
        ledger: CouponLedger,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.ledger = ledger
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.rng = rng or random.SystemRandom()

    def _window(self, config: FacilityConfig) -> EligibilityWindow:
        return EligibilityWindow.for_config(config, self.clock.now())

    def _window_kwargs(self, config: FacilityConfig) -> dict:
        w = self._window(config)
        return {
            "facility_id": config.facility_id,
            "completed_from": w.completed_from,
            "completed_to": w.completed_to,
            "contacted_after": w.contacted_after,
        }

    # -------------------------
    # Decisions
    # -------------------------

    def is_recruitment_allowed(self, config: FacilityConfig) -> bool:
        if not config.seed_recruitment_active:
            logger.debug("seed recruitment disabled facility=%s", config.facility_id)
            return False

        w = self._window(config)
        with self.session_factory() as db:
            recruitments = RecruitmentStore(db)

            # a pending recruitment must be surfaced, not re-created
            if recruitments.active_for_facility(config.facility_id) is not None:
                return True

            if recruitments.sent_since(config.facility_id, w.contacted_after):
                logger.debug("seed message sent within contact rate facility=%s", config.facility_id)
                return False

        return self.has_eligible_subjects(config)

    def has_eligible_subjects(self, config: FacilityConfig) -> bool:
        with self.session_factory() as db:
            return SubjectStore(db).any_eligible_for_recontact(**self._window_kwargs(config))

    def select_eligible_subject(
        self,
        config: FacilityConfig,
        *,
        session: Optional[Session] = None,
    ) -> Optional[Subject]:
        """
        Uniform draw over everyone eligible. Candidates come back ordered by id
        so a seeded rng reproduces the draw.
        """
        kwargs = self._window_kwargs(config)
        if session is not None:
            candidates = SubjectStore(session).eligible_for_recontact(**kwargs)
        else:
            with self.session_factory() as db:
                candidates = SubjectStore(db).eligible_for_recontact(**kwargs)

        if not candidates:
            return None
        return self.rng.choice(candidates)

    # -------------------------
    # State transitions
    # -------------------------

    def _create(self, db: Session, config: FacilityConfig) -> Optional[SeedRecruitment]:
        recruitments = RecruitmentStore(db)

        existing = recruitments.active_for_facility(config.facility_id)
        if existing is not None:
            return existing

        subject = self.select_eligible_subject(config, session=db)
        if subject is None:
            logger.warning("no eligible subjects for seed recruitment facility=%s", config.facility_id)
            return None

        coupon = self.ledger.issue_new(seed_entity_id(subject.id), session=db)
        channel, contact = _contact_for(subject)

        recruitment = SeedRecruitment(
            facility_id=config.facility_id,
            selected_subject_id=subject.id,
            selected_at=self.clock.now(),
            contact_info=contact,
            contact_channel=channel,
            coupon_code=coupon.code,
            sent=False,
        )
        recruitments.insert(recruitment)
        logger.info(
            "seed recruitment created id=%s subject=%s facility=%s",
            recruitment.id,
            subject.id,
            config.facility_id,
        )
        return recruitment

    def get_or_select_subject(self, config: FacilityConfig) -> Optional[SeedRecruitment]:
        """
        Idempotent: returns the active recruitment if there is one, else selects
        a subject, issues their coupon and records the recruitment in ONE
        transaction. If coupon issuance fails nothing is written; if another
        device claimed the facility's slot first, its recruitment is returned.
        """
        try:
            with self.session_factory() as db:
                return self._create(db, config)
        except IntegrityError:
            with self.session_factory() as db:
                winner = RecruitmentStore(db).active_for_facility(config.facility_id)
            if winner is None:
                raise
            logger.info("seed recruitment race lost facility=%s; using id=%s", config.facility_id, winner.id)
            return winner

    def get_recruitment(self, recruitment_id: int) -> Optional[SeedRecruitment]:
        with self.session_factory() as db:
            return RecruitmentStore(db).get(recruitment_id)

    def mark_message_sent(self, recruitment_id: int, sent_at: Optional[datetime] = None) -> SeedRecruitment:
        """
        The only transition to sent=True. Raises RecruitmentNotFoundError or
        RecruitmentAlreadySentError; the contact-rate clock starts at sent_at.
        """
        when = as_utc(sent_at) or self.clock.now()

        with self.session_factory() as db:
            recruitments = RecruitmentStore(db)
            applied = recruitments.mark_sent(recruitment_id, when)
            row = recruitments.get(recruitment_id)

        if row is None:
            raise RecruitmentNotFoundError(recruitment_id)
        if not applied:
            raise RecruitmentAlreadySentError(recruitment_id)

        logger.info("seed recruitment message sent id=%s", recruitment_id)
        return row

    # -------------------------
    # Messaging
    # -------------------------

    def recruitment_message(self, recruitment: SeedRecruitment, facility_name: str) -> str:
        """Invitation text for the channel recorded on the recruitment."""
        name = (facility_name or "").strip() or "our facility"
        code = recruitment.coupon_code

        if recruitment.contact_channel == ContactChannel.PHONE:
            return (
                f"Hello! You previously participated in our health survey at {name}. "
                "We'd like to invite you back for a follow-up survey.\n\n"
                "Your participation helps improve health services in our community.\n\n"
                f"Please visit us at your convenience with this coupon code: {code}\n\n"
                "Thank you!"
            )

        return (
            "Subject: Follow-up Survey Invitation\n\n"
            "Dear Participant,\n\n"
            f"Thank you for your previous participation in our health survey at {name}.\n\n"
            "We would like to invite you to participate in a follow-up survey. Your continued "
            "participation helps us better understand and improve health services in our community.\n\n"
            f"Please visit our facility at your convenience and present this coupon code: {code}\n\n"
            "Best regards,\n"
            f"{name} Survey Team"
        )
