"""
Repositories over one Session.

Stores never commit: the caller's unit of work (session_scope) does. Every
mutating method is a single statement (INSERT or conditional UPDATE), so the
database decides races, not a read in Python followed by a write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import and_, exists, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..config import Settings, settings as default_settings
from ..models.biometric_record import BiometricRecord
from ..models.coupon import Coupon, CouponStatus
from ..models.facility_config import FacilityConfig
from ..models.seed_recruitment import SeedRecruitment
from ..models.subject import Subject
from .exceptions import DuplicateCodeError, SubjectNotFoundError


class CouponStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, code: str) -> Optional[Coupon]:
        # populate_existing: conditional UPDATEs bypass the identity map
        return self.session.get(Coupon, code, populate_existing=True)

    def exists(self, code: str) -> bool:
        row = self.session.exec(select(Coupon.code).where(Coupon.code == code)).first()
        return row is not None

    def insert(self, coupon: Coupon) -> Coupon:
        """
        A duplicate code fails the flush; the enclosing unit of work then
        rolls back as a whole.
        """
        self.session.add(coupon)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateCodeError(coupon.code) from e
        return coupon

    def mark_used(
        self,
        code: str,
        used_by_entity_id: str,
        used_at: datetime,
        issued_after: Optional[datetime] = None,
    ) -> bool:
        """
        Conditional UPDATE issued -> used. Returns True iff this call made the
        transition. issued_after excludes coupons past their validity window.
        """
        conditions = [Coupon.code == code, Coupon.status == CouponStatus.ISSUED]
        if issued_after is not None:
            conditions.append(Coupon.issued_at >= issued_after)

        stmt = (
            update(Coupon)
            .where(and_(*conditions))
            .values(status=CouponStatus.USED, used_by_entity_id=used_by_entity_id, used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return int(result.rowcount or 0) == 1

    def mark_payment_made(self, code: str, paid_at: datetime, signature: Optional[str] = None) -> bool:
        """Conditional UPDATE: only a used, unpaid coupon takes a payment."""
        stmt = (
            update(Coupon)
            .where(
                Coupon.code == code,
                Coupon.status == CouponStatus.USED,
                Coupon.recruitment_payment_at.is_(None),
            )
            .values(recruitment_payment_at=paid_at, recruitment_payment_signature=signature)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return int(result.rowcount or 0) == 1

    def unpaid_referrals(self, entity_id: str) -> List[Coupon]:
        q = (
            select(Coupon)
            .where(
                Coupon.issued_to_entity_id == entity_id,
                Coupon.status == CouponStatus.USED,
                Coupon.recruitment_payment_at.is_(None),
            )
            .order_by(Coupon.used_at, Coupon.code)
        )
        return list(self.session.exec(q).all())

    def expire_issued_before(self, cutoff: datetime) -> int:
        stmt = (
            update(Coupon)
            .where(Coupon.status == CouponStatus.ISSUED, Coupon.issued_at < cutoff)
            .values(status=CouponStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return int(result.rowcount or 0)

    def issued_to(self, entity_id: str) -> List[Coupon]:
        q = select(Coupon).where(Coupon.issued_to_entity_id == entity_id).order_by(Coupon.issued_at, Coupon.code)
        return list(self.session.exec(q).all())


class BiometricStore:
    def __init__(self, session: Session):
        self.session = session

    def insert(self, record: BiometricRecord) -> BiometricRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def enrolled_between(self, since: datetime, until: datetime) -> Iterator[BiometricRecord]:
        """
        Records inside the cooldown window, newest first. Streams rows so the
        scan holds one batch in memory at a time.
        """
        q = (
            select(BiometricRecord)
            .where(BiometricRecord.enrolled_at >= since, BiometricRecord.enrolled_at <= until)
            .order_by(BiometricRecord.enrolled_at.desc(), BiometricRecord.id.desc())
            .execution_options(yield_per=200)
        )
        return iter(self.session.exec(q))


class RecruitmentStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, recruitment_id: int) -> Optional[SeedRecruitment]:
        return self.session.get(SeedRecruitment, recruitment_id)

    def active_for_facility(self, facility_id: int) -> Optional[SeedRecruitment]:
        q = select(SeedRecruitment).where(
            SeedRecruitment.facility_id == facility_id,
            SeedRecruitment.sent == False,  # noqa: E712
        )
        return self.session.exec(q).first()

    def sent_since(self, facility_id: int, cutoff: datetime) -> List[SeedRecruitment]:
        q = select(SeedRecruitment).where(
            SeedRecruitment.facility_id == facility_id,
            SeedRecruitment.sent == True,  # noqa: E712
            SeedRecruitment.sent_at > cutoff,
        )
        return list(self.session.exec(q).all())

    def insert(self, recruitment: SeedRecruitment) -> SeedRecruitment:
        """
        Flushes immediately; an IntegrityError here means another session
        already holds the facility's active slot.
        """
        self.session.add(recruitment)
        self.session.flush()
        return recruitment

    def mark_sent(self, recruitment_id: int, sent_at: datetime) -> bool:
        stmt = (
            update(SeedRecruitment)
            .where(SeedRecruitment.id == recruitment_id, SeedRecruitment.sent == False)  # noqa: E712
            .values(sent=True, sent_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return int(result.rowcount or 0) == 1


class SubjectStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, subject_id: str) -> Optional[Subject]:
        return self.session.get(Subject, subject_id)

    def require(self, subject_id: str) -> Subject:
        subject = self.get(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id)
        return subject

    def get_or_create(self, subject_id: str, facility_id: Optional[int] = None) -> Subject:
        subject = self.get(subject_id)
        if subject is None:
            subject = Subject(id=subject_id, facility_id=facility_id)
            self.session.add(subject)
            self.session.flush()
        return subject

    def _eligible_query(
        self,
        *,
        facility_id: Optional[int],
        completed_from: datetime,
        completed_to: datetime,
        contacted_after: datetime,
    ):
        # contacted = a recruitment sent after the cutoff, or one still pending
        recently_contacted = exists().where(
            SeedRecruitment.selected_subject_id == Subject.id,
            or_(
                SeedRecruitment.sent == False,  # noqa: E712
                SeedRecruitment.sent_at > contacted_after,
            ),
        )
        has_phone = and_(Subject.contact_phone.is_not(None), func.trim(Subject.contact_phone) != "")
        has_email = and_(Subject.contact_email.is_not(None), func.trim(Subject.contact_email) != "")

        q = select(Subject).where(
            Subject.completed_at.is_not(None),
            Subject.completed_at >= completed_from,
            Subject.completed_at <= completed_to,
            Subject.contact_consent == True,  # noqa: E712
            or_(has_phone, has_email),
            ~recently_contacted,
        )
        if facility_id is not None:
            q = q.where(or_(Subject.facility_id == facility_id, Subject.facility_id.is_(None)))
        return q

    def eligible_for_recontact(
        self,
        *,
        facility_id: Optional[int],
        completed_from: datetime,
        completed_to: datetime,
        contacted_after: datetime,
    ) -> List[Subject]:
        q = self._eligible_query(
            facility_id=facility_id,
            completed_from=completed_from,
            completed_to=completed_to,
            contacted_after=contacted_after,
        ).order_by(Subject.id)
        return list(self.session.exec(q).all())

    def any_eligible_for_recontact(self, **window) -> bool:
        q = self._eligible_query(**window).limit(1)
        return self.session.exec(q).first() is not None


class FacilityConfigStore:
    def __init__(self, session: Session, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or default_settings

    def defaults(self, facility_id: int) -> FacilityConfig:
        s = self.settings
        return FacilityConfig(
            facility_id=facility_id,
            facility_name=s.facility_name,
            allow_non_coupon_participants=s.allow_non_coupon_participants,
            coupons_to_issue=s.coupons_to_issue,
            re_enrollment_days=s.re_enrollment_days,
            seed_recruitment_active=s.seed_recruitment_active,
            seed_contact_rate_days=s.seed_contact_rate_days,
            seed_window_min_days=s.seed_window_min_days,
            seed_window_max_days=s.seed_window_max_days,
            synced_at=None,
        )

    def load(self, facility_id: int) -> FacilityConfig:
        row = self.session.get(FacilityConfig, facility_id)
        if row is None:
            return self.defaults(facility_id)
        self.session.expunge(row)
        return row

    def save(self, config: FacilityConfig) -> FacilityConfig:
        merged = self.session.merge(config)
        self.session.flush()
        return merged
