# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# Program constants (windows, thresholds, percentages) live here too so
# operators can tune them per deployment without a code change.

import json
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def safe_json_loads(value):
    try:
        return json.loads(value)
    except Exception:
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_json_loads=safe_json_loads,
    )

    # Core DB connection string, like sqlite:///./affiliates.db or a Postgres URL.
    DATABASE_URL: str

    # Secret used to verify bearer tokens issued by the identity provider.
    SECRET_KEY: str

    # JWT algorithm to use. Default HS256 (symmetric HMAC-SHA256).
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Toggle SQLAlchemy echo logs. Useful for debugging queries locally.
    DB_ECHO: bool = False

    # Public base URL used when building referral links.
    APP_BASE_URL: Optional[str] = None

    # Attribution: how long an attribution credits earning events, and how
    # long the referral cookie set on a page view lives.
    ATTRIBUTION_WINDOW_DAYS: int = Field(default=365, gt=0)
    REFERRAL_COOKIE_TTL_DAYS: int = Field(default=30, gt=0)
    ATTRIBUTION_PAGE_SIZE_DEFAULT: int = Field(default=50, gt=0)
    ATTRIBUTION_PAGE_SIZE_MAX: int = Field(default=200, gt=0)

    # Holdback before a commission becomes payable. Mirrors the order
    # refund window so refunded orders are voided before payout.
    LEDGER_PENDING_DAYS: int = Field(default=14, ge=0)

    # Commission split, as fractions of the platform fee / subscription fee.
    AFFILIATE_USER_COMMISSION_PCT: float = 0.25
    SUB_AFFILIATE_USER_COMMISSION_PCT: float = 0.20
    PARENT_AFFILIATE_USER_COMMISSION_PCT: float = 0.05
    AFFILIATE_BUSINESS_COMMISSION_PCT: float = 0.50
    SUB_AFFILIATE_BUSINESS_COMMISSION_PCT: float = 0.40
    PARENT_AFFILIATE_BUSINESS_COMMISSION_PCT: float = 0.10

    # Discount caps, as whole percentages of the affiliate's own commission.
    MAIN_AFFILIATE_MAX_DISCOUNT_PCT: int = Field(default=80, ge=0, le=100)
    SUB_AFFILIATE_MAX_DISCOUNT_PCT: int = Field(default=75, ge=0, le=100)

    # Payout batch settings.
    MIN_PAYOUT_AMOUNT_CENTS: int = Field(default=1000, ge=0)
    PAYOUT_CURRENCY: str = "eur"
    PAYOUT_LOOKBACK_DAYS: int = Field(default=7, gt=0)
    PAYOUT_LOCK_TTL_SECONDS: int = Field(default=900, gt=0)

    # Stripe Connect transfers.
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = Field(default=20, gt=0)
    STRIPE_MAX_NETWORK_RETRIES: int = Field(default=0, ge=0)

    # Shared secret the scheduler presents in X-Cron-Secret.
    CRON_SECRET: Optional[str] = None
    CRON_SECRET_HEADER_NAME: str = "X-Cron-Secret"

    @field_validator("PAYOUT_CURRENCY", mode="before")
    @classmethod
    def _normalize_currency(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "AFFILIATE_USER_COMMISSION_PCT",
        "SUB_AFFILIATE_USER_COMMISSION_PCT",
        "PARENT_AFFILIATE_USER_COMMISSION_PCT",
        "AFFILIATE_BUSINESS_COMMISSION_PCT",
        "SUB_AFFILIATE_BUSINESS_COMMISSION_PCT",
        "PARENT_AFFILIATE_BUSINESS_COMMISSION_PCT",
    )
    @classmethod
    def _check_fraction(cls, value):
        if value < 0 or value > 1:
            raise ValueError("commission percentages are fractions between 0 and 1")
        return value


# Instantiate a single settings object for app-wide import.
# Any module can just `from affiliate_engine.core.config import settings`.
settings = Settings()
