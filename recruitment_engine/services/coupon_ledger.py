from __future__ import annotations

import logging
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Generator, List, Optional, Set

from sqlalchemy import event
from sqlmodel import Session

from ..config import Settings, settings as default_settings
from ..database import SessionFactory, session_scope
from ..models.coupon import Coupon, CouponStatus
from ..models.timestamps import as_utc
from .collaborators import Clock, SystemClock
from .exceptions import GenerationExhaustedError
from .stores import CouponStore

logger = logging.getLogger(__name__)


class CouponOutcome(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CouponCheck:
    """
    Typed result of validate / mark_used. coupon is set whenever the code
    exists, so callers can show who issued it or when it was used.
    """
    outcome: CouponOutcome
    code: str
    coupon: Optional[Coupon] = None

    @property
    def ok(self) -> bool:
        return self.outcome == CouponOutcome.OK


class PaymentOutcome(str, Enum):
    RECORDED = "recorded"
    INVALID = "invalid"
    NOT_USED = "not_used"
    ALREADY_PAID = "already_paid"


@dataclass(frozen=True)
class PaymentCheck:
    """Typed result of mark_payment_made"""
    outcome: PaymentOutcome
    code: str
    coupon: Optional[Coupon] = None

    @property
    def ok(self) -> bool:
        return self.outcome == PaymentOutcome.RECORDED


def normalize_code(raw: str) -> str:
    return (raw or "").strip().upper()


class CouponLedger:
    """
    Single-use token issuance and redemption.

    Generation reserves every code it hands out until the transaction that
    issues it ends, so two callers in this process never receive the same code.
    Across processes the coupons primary key makes the second `issue` fail.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        settings: Optional[Settings] = None,
        code_length: Optional[int] = None,
        alphabet: Optional[str] = None,
        max_attempts: Optional[int] = None,
        expiry_days: Optional[int] = None,
    ):
        s = settings or default_settings
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.rng = rng or random.SystemRandom()
        self.code_length = int(code_length if code_length is not None else s.coupon_code_length)
        self.alphabet = alphabet if alphabet is not None else s.coupon_alphabet
        self.max_attempts = int(max_attempts if max_attempts is not None else s.coupon_generation_attempts)
        self.expiry_days = expiry_days if expiry_days is not None else s.coupon_expiry_days

        if self.code_length < 1 or not self.alphabet:
            raise ValueError("coupon code length and alphabet must be non-empty")

        self._reserved: Set[str] = set()
        self._lock = threading.Lock()
        self._pending_key = f"coupon_ledger.pending.{id(self)}"

    # -------------------------
    # Helpers
    # -------------------------

    @contextmanager
    def _unit(self, session: Optional[Session]) -> Generator[Session, None, None]:
        """Join the caller's transaction when given one, else open our own."""
        if session is not None:
            yield session
            return
        with self.session_factory() as own:
            yield own

    def _random_code(self) -> str:
        return "".join(self.rng.choice(self.alphabet) for _ in range(self.code_length))

    def _expiry_cutoff(self, now: datetime) -> Optional[datetime]:
        if not self.expiry_days:
            return None
        return now - timedelta(days=int(self.expiry_days))

    def _is_overdue(self, coupon: Coupon, now: datetime) -> bool:
        cutoff = self._expiry_cutoff(now)
        return cutoff is not None and coupon.issued_at < cutoff

    def _classify(self, code: str, coupon: Optional[Coupon], now: datetime) -> CouponCheck:
        if coupon is None:
            return CouponCheck(CouponOutcome.INVALID, code)
        if coupon.status == CouponStatus.USED:
            return CouponCheck(CouponOutcome.ALREADY_USED, code, coupon)
        if coupon.status == CouponStatus.EXPIRED or self._is_overdue(coupon, now):
            return CouponCheck(CouponOutcome.EXPIRED, code, coupon)
        return CouponCheck(CouponOutcome.OK, code, coupon)

    def release(self, code: str) -> None:
        """Drop a reservation for a generated code that will not be issued."""
        with self._lock:
            self._reserved.discard(code)

    @property
    def reserved_codes(self) -> frozenset:
        with self._lock:
            return frozenset(self._reserved)

    def _hold_until_transaction_end(self, session: Session, code: str) -> None:
        """
        Keep the reservation while the issuing transaction is open. Once it
        commits the primary key guards the code; once it rolls back the code
        is free again. Either way the reservation is dropped.
        """
        pending = session.info.get(self._pending_key)
        if pending is None:
            pending = session.info[self._pending_key] = set()
            event.listen(session, "after_commit", self._on_commit)
            event.listen(session, "after_soft_rollback", self._on_rollback)
        pending.add(code)

    def _release_pending(self, session: Session) -> None:
        pending = session.info.get(self._pending_key)
        if not pending:
            return
        with self._lock:
            self._reserved.difference_update(pending)
        pending.clear()

    def _on_commit(self, session: Session) -> None:
        self._release_pending(session)

    def _on_rollback(self, session: Session, previous_transaction) -> None:  # noqa: ANN001
        self._release_pending(session)

    # -------------------------
    # Operations
    # -------------------------

    def generate_unique_code(self, *, session: Optional[Session] = None) -> str:
        """
        Draw random codes until one is free in the ledger and not reserved by
        a concurrent caller. Raises GenerationExhaustedError after
        max_attempts collisions; never returns a code already in use.
        """
        with self._unit(session) as db:
            store = CouponStore(db)
            for _ in range(self.max_attempts):
                code = self._random_code()
                with self._lock:
                    if code in self._reserved:
                        continue
                    self._reserved.add(code)
                try:
                    taken = store.exists(code)
                except Exception:
                    self.release(code)
                    raise
                if not taken:
                    return code
                self.release(code)

        logger.error("coupon code generation exhausted after %s attempts", self.max_attempts)
        raise GenerationExhaustedError(
            f"Unable to generate a unique coupon code after {self.max_attempts} attempts"
        )

    def issue(self, code: str, issued_to_entity_id: str, *, session: Optional[Session] = None) -> Coupon:
        """
        Insert an ISSUED coupon. The insert itself detects a taken code
        (DuplicateCodeError); there is no separate pre-read.
        """
        code = normalize_code(code)
        try:
            with self._unit(session) as db:
                self._hold_until_transaction_end(db, code)
                coupon = Coupon(
                    code=code,
                    status=CouponStatus.ISSUED,
                    issued_to_entity_id=issued_to_entity_id,
                    issued_at=self.clock.now(),
                )
                CouponStore(db).insert(coupon)
        except Exception:
            self.release(code)
            raise

        logger.info("coupon issued code=%s to=%s", code, issued_to_entity_id)
        return coupon

    def issue_new(self, issued_to_entity_id: str, *, session: Optional[Session] = None) -> Coupon:
        with self._unit(session) as db:
            code = self.generate_unique_code(session=db)
            return self.issue(code, issued_to_entity_id, session=db)

    def issue_for_subject(
        self,
        subject_id: str,
        count: int,
        *,
        session: Optional[Session] = None,
    ) -> List[Coupon]:
        """
        Referral coupons handed to a participant at survey completion.
        All or nothing: one transaction for the batch.
        """
        if count <= 0:
            return []
        with self._unit(session) as db:
            return [self.issue_new(subject_id, session=db) for _ in range(count)]

    def validate(self, code: str) -> CouponCheck:
        """Case-insensitive lookup. Read-only."""
        normalized = normalize_code(code)
        if not normalized:
            return CouponCheck(CouponOutcome.INVALID, normalized)

        with self.session_factory() as db:
            coupon = CouponStore(db).get(normalized)
            return self._classify(normalized, coupon, self.clock.now())

    def mark_used(
        self,
        code: str,
        consuming_entity_id: str,
        used_at: Optional[datetime] = None,
        *,
        session: Optional[Session] = None,
    ) -> CouponCheck:
        """
        The only transition to USED: a single conditional UPDATE. When two
        callers race on one code exactly one UPDATE matches; the other (and
        any later call) gets ALREADY_USED and used_at stays as first written.
        """
        normalized = normalize_code(code)
        if not normalized:
            return CouponCheck(CouponOutcome.INVALID, normalized)

        now = self.clock.now()
        when = as_utc(used_at) or now

        with self._unit(session) as db:
            store = CouponStore(db)
            applied = store.mark_used(
                normalized,
                consuming_entity_id,
                when,
                issued_after=self._expiry_cutoff(now),
            )
            coupon = store.get(normalized)

        if applied:
            logger.info("coupon used code=%s by=%s", normalized, consuming_entity_id)
            return CouponCheck(CouponOutcome.OK, normalized, coupon)

        check = self._classify(normalized, coupon, now)
        if check.outcome == CouponOutcome.OK:
            # still ISSUED but the UPDATE missed: only the expiry guard does that
            check = CouponCheck(CouponOutcome.EXPIRED, normalized, coupon)
        logger.warning("coupon redemption rejected code=%s outcome=%s", normalized, check.outcome.value)
        return check

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """ISSUED -> EXPIRED for coupons past coupon_expiry_days. No-op without expiry."""
        cutoff = self._expiry_cutoff(as_utc(now) or self.clock.now())
        if cutoff is None:
            return 0
        with self.session_factory() as db:
            count = CouponStore(db).expire_issued_before(cutoff)
        if count:
            logger.info("expired %s stale coupons", count)
        return count

    def coupons_issued_to(self, entity_id: str) -> List[Coupon]:
        with self.session_factory() as db:
            return CouponStore(db).issued_to(entity_id)

    # -------------------------
    # Referral payments
    # -------------------------

    def mark_payment_made(
        self,
        code: str,
        paid_at: Optional[datetime] = None,
        signature: Optional[str] = None,
        *,
        session: Optional[Session] = None,
    ) -> PaymentCheck:
        """
        Record the referral payment owed to the coupon's issuer. Only a USED
        coupon can be paid, and only once: a conditional UPDATE, so a repeated
        or concurrent call gets ALREADY_PAID and the first payment stands.
        """
        normalized = normalize_code(code)
        if not normalized:
            return PaymentCheck(PaymentOutcome.INVALID, normalized)

        when = as_utc(paid_at) or self.clock.now()

        with self._unit(session) as db:
            store = CouponStore(db)
            applied = store.mark_payment_made(normalized, when, signature)
            coupon = store.get(normalized)

        if applied:
            logger.info("recruitment payment recorded code=%s issuer=%s", normalized, coupon.issued_to_entity_id)
            return PaymentCheck(PaymentOutcome.RECORDED, normalized, coupon)

        if coupon is None:
            outcome = PaymentOutcome.INVALID
        elif coupon.is_paid():
            outcome = PaymentOutcome.ALREADY_PAID
        else:
            outcome = PaymentOutcome.NOT_USED
        logger.warning("recruitment payment rejected code=%s outcome=%s", normalized, outcome.value)
        return PaymentCheck(outcome, normalized, coupon)

    def pay_referrals(
        self,
        entity_id: str,
        signature: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> List[Coupon]:
        """
        Pay every used, unpaid coupon issued to `entity_id` in one
        transaction. Returns only the coupons this call paid.
        """
        when = as_utc(paid_at) or self.clock.now()
        with self.session_factory() as db:
            store = CouponStore(db)
            codes = [c.code for c in store.unpaid_referrals(entity_id)]
            paid = [code for code in codes if store.mark_payment_made(code, when, signature)]
            coupons = [store.get(code) for code in paid]

        if coupons:
            logger.info("recruitment payment recorded issuer=%s coupons=%s", entity_id, len(coupons))
        return coupons


__all__ = [
    "CouponCheck",
    "CouponLedger",
    "CouponOutcome",
    "PaymentCheck",
    "PaymentOutcome",
    "normalize_code",
]
