from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, LargeBinary
from sqlmodel import SQLModel, Field

from .timestamps import UTCDateTime, utcnow


def template_digest(template: bytes) -> str:
    return hashlib.sha256(template).hexdigest()


class BiometricRecord(SQLModel, table=True):
    """
    Enrolled fingerprint template. Written once, never updated.

    template is the vendor template kept for pairwise matching;
    template_hash is its sha256, kept for audit and exact lookups.
    """

    __tablename__ = "biometric_records"

    id: Optional[int] = Field(default=None, primary_key=True)

    template: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    template_hash: str = Field(index=True)

    enrolled_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime())
    owner_entity_id: str = Field(index=True)
    facility_id: Optional[int] = Field(default=None, index=True)
