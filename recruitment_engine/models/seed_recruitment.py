from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field

from .timestamps import UTCDateTime, utcnow


class ContactChannel(str, Enum):
    PHONE = "phone"
    EMAIL = "email"


class SeedRecruitment(SQLModel, table=True):
    """
    A past participant selected for re-contact (RDS seed).

    Notes:
    - "active" means sent=False. At most one active row per facility; the
      partial unique index enforces it across processes and devices.
    - selected -> sent happens once; sent rows are terminal.
    """

    __tablename__ = "seed_recruitments"
    __table_args__ = (
        Index(
            "uq_seed_recruitments_active_facility",
            "facility_id",
            unique=True,
            sqlite_where=text("sent = 0"),
            postgresql_where=text("sent = false"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    facility_id: int = Field(index=True)

    selected_subject_id: str = Field(foreign_key="subjects.id", index=True)
    selected_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime())

    contact_info: str
    contact_channel: ContactChannel

    coupon_code: str = Field(foreign_key="coupons.code", index=True)

    sent: bool = Field(default=False, index=True)
    sent_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime())
