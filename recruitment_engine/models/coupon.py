from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from .timestamps import UTCDateTime, utcnow


class CouponStatus(str, Enum):
    """
    Coupon lifecycle.

    ISSUED -> USED     (redeemed by a participant, terminal)
    ISSUED -> EXPIRED  (time-driven, terminal)
    """

    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"


class Coupon(SQLModel, table=True):
    """
    Single-use referral / participation token.

    The code is the primary key: it is unique for the lifetime of the store and
    a second insert under the same code fails at the database, not in Python.
    """

    __tablename__ = "coupons"

    code: str = Field(primary_key=True, max_length=32)

    status: CouponStatus = Field(default=CouponStatus.ISSUED, index=True)

    # Survey id of the referrer, or "SEED_<subject id>" for seed recruitment
    issued_to_entity_id: str = Field(index=True)
    issued_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime())

    used_by_entity_id: Optional[str] = Field(default=None, index=True)
    used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())

    # Referral payment to the issuer: recorded at most once, only after use
    recruitment_payment_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime())
    recruitment_payment_signature: Optional[str] = Field(default=None)

    def is_paid(self) -> bool:
        return self.recruitment_payment_at is not None
