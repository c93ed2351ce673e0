"""
Tests for seed (RDS) recruitment selection.

Covers:
- Eligibility window, consent and contact filters
- Idempotent get_or_select_subject
- Contact-rate throttling after a message is sent
- One active recruitment per facility, also under concurrent callers
- Rollback when the seed coupon cannot be minted
"""
import random
import threading

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from recruitment_engine.models.coupon import Coupon, CouponStatus
from recruitment_engine.models.facility_config import FacilityConfig
from recruitment_engine.models.seed_recruitment import ContactChannel, SeedRecruitment
from recruitment_engine.services.coupon_ledger import CouponLedger
from recruitment_engine.services.exceptions import (
    GenerationExhaustedError,
    RecruitmentAlreadySentError,
    RecruitmentNotFoundError,
)
from recruitment_engine.services.seed_recruitment import SeedRecruitmentSelector, seed_entity_id
from recruitment_engine.services.stores import RecruitmentStore


@pytest.fixture
def selector(ledger, scope, clock):
    return SeedRecruitmentSelector(ledger, session_factory=scope, clock=clock, rng=random.Random(5))


class TestEligibility:
    """Tests for has_eligible_subjects / select_eligible_subject"""

    def test_no_subjects(self, selector, seed_config):
        assert not selector.has_eligible_subjects(seed_config)
        assert selector.select_eligible_subject(seed_config) is None

    def test_only_eligible_subject_is_selected(self, selector, seed_config, add_subject):
        add_subject("S-OK")
        add_subject("S-NO-CONSENT", consent=False)
        add_subject("S-NO-CONTACT", phone=None, email=None)
        add_subject("S-BLANK-CONTACT", phone="   ", email="")
        add_subject("S-UNFINISHED", completed_days_ago=None)
        add_subject("S-TOO-OLD", completed_days_ago=800)
        add_subject("S-OTHER-FACILITY", facility_id=2)

        for _ in range(5):
            assert selector.select_eligible_subject(seed_config).id == "S-OK"

    def test_min_window(self, selector, seed_config, add_subject):
        """Subjects who finished too recently are not yet eligible"""
        add_subject("S-RECENT", completed_days_ago=10)
        add_subject("S-SETTLED", completed_days_ago=45)
        seed_config.seed_window_min_days = 30

        assert selector.select_eligible_subject(seed_config).id == "S-SETTLED"

    def test_email_only_subject(self, selector, seed_config, add_subject):
        add_subject("S-MAIL", phone=None, email="p@example.org")

        recruitment = selector.get_or_select_subject(seed_config)

        assert recruitment.contact_channel == ContactChannel.EMAIL
        assert recruitment.contact_info == "p@example.org"

    def test_phone_preferred_over_email(self, selector, seed_config, add_subject):
        add_subject("S-BOTH", phone="+15550009", email="p@example.org")

        recruitment = selector.get_or_select_subject(seed_config)

        assert recruitment.contact_channel == ContactChannel.PHONE
        assert recruitment.contact_info == "+15550009"

    def test_selection_is_reproducible_with_seeded_rng(self, ledger, scope, clock, seed_config, add_subject):
        for i in range(10):
            add_subject(f"S-{i:02d}")

        picks = [
            SeedRecruitmentSelector(ledger, session_factory=scope, clock=clock, rng=random.Random(42))
            .select_eligible_subject(seed_config)
            .id
            for _ in range(2)
        ]

        assert picks[0] == picks[1]


class TestIsRecruitmentAllowed:
    """Tests for is_recruitment_allowed"""

    def test_disabled(self, selector, seed_config, add_subject):
        add_subject("S-OK")
        seed_config.seed_recruitment_active = False

        assert not selector.is_recruitment_allowed(seed_config)

    def test_enabled_with_eligible_subject(self, selector, seed_config, add_subject):
        add_subject("S-OK")

        assert selector.is_recruitment_allowed(seed_config)

    def test_enabled_without_eligible_subject(self, selector, seed_config):
        assert not selector.is_recruitment_allowed(seed_config)

    def test_active_recruitment_is_surfaced(self, selector, seed_config, add_subject):
        """A pending recruitment keeps the answer True even with nobody else eligible"""
        add_subject("S-OK")
        selector.get_or_select_subject(seed_config)

        assert not selector.has_eligible_subjects(seed_config)
        assert selector.is_recruitment_allowed(seed_config)

    def test_contact_rate_after_send(self, selector, seed_config, add_subject, clock):
        add_subject("S-A")
        add_subject("S-B")
        recruitment = selector.get_or_select_subject(seed_config)
        selector.mark_message_sent(recruitment.id)

        assert not selector.is_recruitment_allowed(seed_config)

        clock.advance(days=6, hours=23)
        assert not selector.is_recruitment_allowed(seed_config)

        clock.advance(hours=1)
        assert selector.is_recruitment_allowed(seed_config)

    def test_contacted_subject_becomes_eligible_again(self, selector, seed_config, add_subject, clock):
        add_subject("S-ONLY")
        recruitment = selector.get_or_select_subject(seed_config)
        selector.mark_message_sent(recruitment.id)

        clock.advance(days=3)
        assert not selector.has_eligible_subjects(seed_config)

        clock.advance(days=4)
        assert selector.has_eligible_subjects(seed_config)


class TestGetOrSelectSubject:
    """Tests for get_or_select_subject"""

    def test_no_eligible_subject_returns_none(self, selector, seed_config):
        assert selector.get_or_select_subject(seed_config) is None

    def test_idempotent_until_sent(self, selector, seed_config, add_subject):
        for i in range(5):
            add_subject(f"S-{i}")

        first = selector.get_or_select_subject(seed_config)
        second = selector.get_or_select_subject(seed_config)

        assert first.id == second.id
        assert first.coupon_code == second.coupon_code
        assert not first.sent

    def test_seed_coupon_issued_to_seed_entity(self, selector, seed_config, add_subject, ledger):
        add_subject("S-OK")

        recruitment = selector.get_or_select_subject(seed_config)

        coupons = ledger.coupons_issued_to(seed_entity_id("S-OK"))
        assert [c.code for c in coupons] == [recruitment.coupon_code]
        assert coupons[0].status == CouponStatus.ISSUED
        assert seed_entity_id("S-OK") == "SEED_S-OK"

    def test_new_selection_after_send(self, selector, seed_config, add_subject, clock):
        add_subject("S-A")
        add_subject("S-B")
        first = selector.get_or_select_subject(seed_config)
        selector.mark_message_sent(first.id)
        clock.advance(days=7)

        second = selector.get_or_select_subject(seed_config)

        assert second.id != first.id
        assert second.coupon_code != first.coupon_code

    def test_coupon_failure_writes_nothing(self, scope, clock, test_settings, seed_config, add_subject):
        """No recruitment row survives when the seed coupon cannot be minted"""
        tiny = CouponLedger(
            session_factory=scope,
            clock=clock,
            rng=random.Random(1),
            settings=test_settings,
            code_length=1,
            alphabet="A",
            max_attempts=5,
        )
        tiny.issue("A", "S-OTHER")
        add_subject("S-OK")
        selector = SeedRecruitmentSelector(tiny, session_factory=scope, clock=clock)

        with pytest.raises(GenerationExhaustedError):
            selector.get_or_select_subject(seed_config)

        with scope() as db:
            assert RecruitmentStore(db).active_for_facility(seed_config.facility_id) is None
        assert tiny.coupons_issued_to(seed_entity_id("S-OK")) == []

    def test_second_active_row_rejected_by_database(self, selector, seed_config, add_subject, scope, ledger):
        """The partial unique index allows one unsent recruitment per facility"""
        add_subject("S-A")
        add_subject("S-B")
        selector.get_or_select_subject(seed_config)
        coupon = ledger.issue_new(seed_entity_id("S-B"))

        with pytest.raises(IntegrityError):
            with scope() as db:
                RecruitmentStore(db).insert(
                    SeedRecruitment(
                        facility_id=seed_config.facility_id,
                        selected_subject_id="S-B",
                        contact_info="+15550001",
                        contact_channel=ContactChannel.PHONE,
                        coupon_code=coupon.code,
                    )
                )

    def test_concurrent_selection_single_recruitment(self, selector, seed_config, add_subject, scope):
        """Four devices ask at once; one recruitment and one seed coupon exist afterwards"""
        for i in range(6):
            add_subject(f"S-{i}")
        n = 4
        barrier = threading.Barrier(n)
        results = []
        errors = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                recruitment = selector.get_or_select_subject(seed_config)
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(recruitment)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == n
        assert len({r.id for r in results}) == 1
        assert len({r.coupon_code for r in results}) == 1
        with scope() as db:
            rows = db.exec(select(SeedRecruitment)).all()
            seed_coupons = [c for c in db.exec(select(Coupon)).all() if c.issued_to_entity_id.startswith("SEED_")]
        assert len(rows) == 1
        assert [c.code for c in seed_coupons] == [results[0].coupon_code]

    def test_facilities_are_independent(self, selector, seed_config, add_subject):
        add_subject("S-A", facility_id=1)
        add_subject("S-B", facility_id=2)
        other = FacilityConfig(facility_id=2, facility_name="Clinic B", seed_recruitment_active=True)

        first = selector.get_or_select_subject(seed_config)
        second = selector.get_or_select_subject(other)

        assert first.selected_subject_id == "S-A"
        assert second.selected_subject_id == "S-B"


class TestMarkMessageSent:
    """Tests for mark_message_sent"""

    def test_marks_sent(self, selector, seed_config, add_subject, clock):
        add_subject("S-OK")
        recruitment = selector.get_or_select_subject(seed_config)

        sent = selector.mark_message_sent(recruitment.id)

        assert sent.sent
        assert sent.sent_at == clock.now()

    def test_twice_raises(self, selector, seed_config, add_subject):
        add_subject("S-OK")
        recruitment = selector.get_or_select_subject(seed_config)
        selector.mark_message_sent(recruitment.id)

        with pytest.raises(RecruitmentAlreadySentError):
            selector.mark_message_sent(recruitment.id)

    def test_unknown_id_raises(self, selector):
        with pytest.raises(RecruitmentNotFoundError):
            selector.mark_message_sent(9999)


class TestRecruitmentMessage:
    """Tests for recruitment_message"""

    def test_sms_text(self, selector, seed_config, add_subject):
        add_subject("S-OK")
        recruitment = selector.get_or_select_subject(seed_config)

        text = selector.recruitment_message(recruitment, "Clinic A")

        assert "Clinic A" in text
        assert recruitment.coupon_code in text
        assert not text.startswith("Subject:")

    def test_email_text(self, selector, seed_config, add_subject):
        add_subject("S-OK", phone=None, email="p@example.org")
        recruitment = selector.get_or_select_subject(seed_config)

        text = selector.recruitment_message(recruitment, "")

        assert text.startswith("Subject: Follow-up Survey Invitation")
        assert "our facility" in text
        assert recruitment.coupon_code in text
