from __future__ import annotations

import os

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AFFILIATE_", extra="ignore")

    environment: str = "development"
    app_base_url: str = "http://localhost:3000"
    trust_proxy_headers: bool = False
    allowed_hosts: str = "localhost,127.0.0.1,testserver"
    cors_allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    log_json: bool = False
    log_level: str = "INFO"

    db_url: str = "sqlite:///./artifacts/affiliate.db"

    auth_jwt_secret: str = "dev-secret-change-me"
    auth_jwt_issuer: str = "affiliate-local"
    auth_jwt_exp_minutes: int = 60 * 24 * 7

    # Scheduled job auth. The platform scheduler marks its requests with
    # `cron_header: 1`; manual callers pass ?secret=.
    cron_secret: str | None = None
    cron_header: str = "x-vercel-cron"

    # Referral subsystem (503 from every referral endpoint when off).
    referrals_enabled: bool = True
    referral_hold_days: int = 7
    referral_code_expiry_days: int | None = None
    commission_type: str = "PERCENT"
    initial_commission_rate: float = 0.25
    recurring_commission_rate: float = 0.10
    fixed_commission_cents: int = 5000
    qualify_on_trial_start: bool = False
    currency: str = "usd"

    job_lock_ttl_minutes: int = 30
    lock_holder: str | None = None

    # Lightweight in-process scheduler (the platform cron is the default trigger).
    scheduler_enabled: bool = False
    scheduler_interval_minutes: int = 60

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, v: str) -> str:
        return str(v or "development").strip().lower() or "development"

    @field_validator("commission_type")
    @classmethod
    def _validate_commission_type(cls, v: str) -> str:
        norm = str(v or "").strip().upper()
        if norm not in {"PERCENT", "FIXED"}:
            raise ValueError(
                f"AFFILIATE_COMMISSION_TYPE must be PERCENT or FIXED (got {v!r})"
            )
        return norm

    @field_validator("cron_secret", "lock_holder")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        raw = str(v or "").strip()
        return raw or None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cron_auth_misconfigured(self) -> bool:
        return self.is_production and not self.cron_secret

    def resolved_lock_holder(self) -> str:
        return self.lock_holder or os.environ.get("HOSTNAME") or "local"
