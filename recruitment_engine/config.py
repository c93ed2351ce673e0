from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Excludes 0/O and 1/I so codes can be read aloud and typed back reliably.
DEFAULT_COUPON_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _split_origins(raw: Any) -> List[str]:
    """
    Normalize CORS allow origins from env.

    Supports:
      - list[str] (already parsed)
      - "*"
      - comma-separated string: "http://127.0.0.1:3000, http://localhost:3000"
    """
    if raw is None:
        return ["*"]

    if isinstance(raw, list):
        items = [str(x).strip() for x in raw]
        items = [x for x in items if x]
        return items or ["*"]

    s = str(raw).strip()
    if not s or s == "*":
        return ["*"]

    parts = [p.strip() for p in s.split(",")]
    parts = [p for p in parts if p]
    return parts or ["*"]


class Settings(BaseSettings):
    """
    Central settings for the recruitment engine.

    - Env var names are the stable contract (aliases below).
    - Facility-level recruitment values here are only defaults; a synced
      facility_config row overrides them per facility.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # App identity
    env: str = Field(default="local", alias="APP_ENV")
    app_name: str = Field(default="recruitment-engine", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Local adapter for the tablet UI (never exposed beyond the device)
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"], alias="CORS_ALLOW_ORIGINS")

    # Storage
    database_url: str = Field(default="", alias="DATABASE_URL")
    db_path: str = Field(default="./data/recruitment.sqlite", alias="DB_PATH")
    # Local-disk latency budget, not a network one
    sqlite_busy_timeout_ms: int = Field(default=5000, alias="SQLITE_BUSY_TIMEOUT_MS")

    # Device identity
    facility_id: int = Field(default=1, alias="FACILITY_ID")
    facility_name: str = Field(default="", alias="FACILITY_NAME")

    # Coupon ledger
    coupon_code_length: int = Field(default=8, alias="COUPON_CODE_LENGTH")
    coupon_alphabet: str = Field(default=DEFAULT_COUPON_ALPHABET, alias="COUPON_ALPHABET")
    coupon_generation_attempts: int = Field(default=10, alias="COUPON_GENERATION_ATTEMPTS")
    coupon_expiry_days: Optional[int] = Field(default=None, alias="COUPON_EXPIRY_DAYS")
    coupons_to_issue: int = Field(default=3, alias="COUPONS_TO_ISSUE")
    allow_non_coupon_participants: bool = Field(default=True, alias="ALLOW_NON_COUPON_PARTICIPANTS")

    # Biometric deduplication
    re_enrollment_days: int = Field(default=90, alias="RE_ENROLLMENT_DAYS")
    capture_attempts: int = Field(default=10, alias="CAPTURE_ATTEMPTS")
    biometric_device: str = Field(default="mock", alias="BIOMETRIC_DEVICE")

    # Seed recruitment (RDS)
    seed_recruitment_active: bool = Field(default=False, alias="SEED_RECRUITMENT_ACTIVE")
    seed_contact_rate_days: int = Field(default=7, alias="SEED_CONTACT_RATE_DAYS")
    seed_window_min_days: int = Field(default=0, alias="SEED_WINDOW_MIN_DAYS")
    seed_window_max_days: int = Field(default=730, alias="SEED_WINDOW_MAX_DAYS")

    # -------------------------
    # Validators / normalizers
    # -------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def _norm_log_level(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip().upper()
        return s or "INFO"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _norm_cors_allow_origins(cls, v: Any) -> list[str]:
        return _split_origins(v)

    @field_validator("database_url", mode="before")
    @classmethod
    def _norm_database_url(cls, v: Any) -> str:
        return ("" if v is None else str(v)).strip()

    @field_validator("db_path", mode="before")
    @classmethod
    def _norm_db_path(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip()
        return s or "./data/recruitment.sqlite"

    @field_validator("coupon_alphabet", mode="before")
    @classmethod
    def _norm_coupon_alphabet(cls, v: Any) -> str:
        s = ("" if v is None else str(v)).strip().upper()
        if not s:
            return DEFAULT_COUPON_ALPHABET
        # de-duplicate while keeping order so the draw stays uniform
        return "".join(dict.fromkeys(s))

    @field_validator("coupon_expiry_days", mode="before")
    @classmethod
    def _norm_coupon_expiry_days(cls, v: Any) -> Optional[int]:
        if v is None:
            return None
        s = str(v).strip()
        if not s or s == "0":
            return None
        return int(s)

    @field_validator("coupon_code_length", "coupon_generation_attempts", "capture_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    # -------------------------
    # Derived helpers
    # -------------------------

    @property
    def resolved_database_url(self) -> str:
        """
        Priority:
        1) DATABASE_URL if provided
        2) Build sqlite:/// URL from DB_PATH
        """
        if self.database_url:
            return self.database_url

        path = (self.db_path or "").strip() or "./data/recruitment.sqlite"

        if path.startswith("sqlite:"):
            return path

        p = Path(path)
        if not p.is_absolute():
            if str(p).startswith("./"):
                return f"sqlite:///{p.as_posix()}"
            return f"sqlite:///./{p.as_posix()}"

        # Absolute path needs 4 slashes after scheme (sqlite:////abs/path)
        return f"sqlite:////{p.as_posix().lstrip('/')}"


settings = Settings()
