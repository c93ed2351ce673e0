# recruitment_engine/models/__init__.py
# Central import surface for SQLModel table registration.
# Keeping these imports ensures init_db() sees all models and creates tables.

from .timestamps import UTCDateTime, as_utc, utcnow
from .subject import Subject
from .coupon import Coupon, CouponStatus
from .biometric_record import BiometricRecord, template_digest
from .seed_recruitment import ContactChannel, SeedRecruitment
from .facility_config import FacilityConfig

__all__ = [
    "Subject",
    "UTCDateTime",
    "as_utc",
    "utcnow",
    "Coupon",
    "CouponStatus",
    "BiometricRecord",
    "template_digest",
    "ContactChannel",
    "SeedRecruitment",
    "FacilityConfig",
]
