from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from .timestamps import UTCDateTime, utcnow


class Subject(SQLModel, table=True):
    """
    One survey participation (the "subject" of a survey).

    Notes:
    - id is the survey id issued by the tablet (string, stable across sync).
    - completed_at drives seed-recruitment eligibility.
    - contact_* fields are only populated when contact_consent is True.
    - referral_coupon_code is the coupon this subject arrived with, if any.
    """

    __tablename__ = "subjects"

    id: str = Field(primary_key=True)

    facility_id: Optional[int] = Field(default=None, index=True)

    started_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime())
    completed_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime())

    # ---- Contact consent (write-back from the consent screen) ----
    contact_consent: bool = Field(default=False, index=True)
    contact_phone: Optional[str] = Field(default=None)
    contact_email: Optional[str] = Field(default=None)

    referral_coupon_code: Optional[str] = Field(default=None, index=True)

    # -------------------------
    # Convenience helpers
    # -------------------------

    def is_completed(self) -> bool:
        return self.completed_at is not None

    def has_contact_info(self) -> bool:
        return bool((self.contact_phone or "").strip() or (self.contact_email or "").strip())

    def is_contactable(self) -> bool:
        return bool(self.contact_consent) and self.has_contact_info()
