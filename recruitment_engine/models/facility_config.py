from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from .timestamps import UTCDateTime, utcnow


class FacilityConfig(SQLModel, table=True):
    """
    Per-facility recruitment policy, as last synced from the management server.

    When no row exists for a facility the engine falls back to Settings
    defaults (see services.stores.FacilityConfigStore.load).
    """

    __tablename__ = "facility_config"

    facility_id: int = Field(primary_key=True)
    facility_name: str = Field(default="")

    allow_non_coupon_participants: bool = Field(default=True)
    coupons_to_issue: int = Field(default=3)

    re_enrollment_days: int = Field(default=90)

    seed_recruitment_active: bool = Field(default=False)
    seed_contact_rate_days: int = Field(default=7)
    seed_window_min_days: int = Field(default=0)
    seed_window_max_days: int = Field(default=730)

    synced_at: Optional[datetime] = Field(default_factory=utcnow, sa_type=UTCDateTime())
