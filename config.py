"""
config.py — Application configuration.

All settings are loaded from environment variables (via .env file).
Broker credentials are checked when a claim starts, so the app can boot
(and serve gift pages) before the brokerage account is wired up.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Token, account create, email search, status check, journal, order, reversal
_SINGLE_BROKER_CALLS = 7


class Settings(BaseSettings):
    """Central configuration for Stockgift.

    All fields map 1-to-1 to environment variables (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Application
    # ─────────────────────────────────────────────
    app_name: str = "Stockgift"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    # Public URL of the web app; claim links and stock images are built from it
    public_base_url: str = "http://localhost:3000"

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./stockgift.db"
    db_pool_size: int = 20
    db_max_overflow: int = 40
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800  # recycle connections every 30 min

    # ─────────────────────────────────────────────
    # Authentication / JWT
    # ─────────────────────────────────────────────
    jwt_secret_key: str = "change-this-in-production-min-32-chars!!"
    jwt_algorithm: str = "HS256"
    access_token_expire_hours: int = 24 * 30
    session_cookie_name: str = "auth-token"
    session_cookie_max_age: int = 30 * 24 * 60 * 60  # 30 days
    min_password_length: int = 6

    # ─────────────────────────────────────────────
    # Brokerage (Alpaca Broker API)
    # ─────────────────────────────────────────────
    alpaca_api_key: str = ""
    alpaca_secret_key: str = ""
    alpaca_base_url: str = "https://broker-api.sandbox.alpaca.markets"
    firm_account_id: str = ""
    broker_timeout_seconds: float = 10.0

    # Polling budgets for the claim workflow
    activation_poll_attempts: int = 30
    activation_poll_interval_seconds: float = 2.0
    settlement_poll_attempts: int = 10
    settlement_poll_interval_seconds: float = 2.0

    # Reverse the cash journal when a later claim step fails
    claim_compensate_on_abort: bool = True
    # A claim lock older than this is considered abandoned; must outlast a
    # worst-case claim (see claim_worst_case_seconds)
    claim_lock_ttl_seconds: int = 900

    # Gifts
    allowed_stock_symbols: str = "TSLA,AAPL,NVDA"

    # ─────────────────────────────────────────────
    # WhatsApp / Twilio
    # ─────────────────────────────────────────────
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    # Sandbox: +14155238886, Production: your approved number
    twilio_whatsapp_from: str = ""

    @property
    def whatsapp_enabled(self) -> bool:
        return all([
            self.twilio_account_sid,
            self.twilio_auth_token,
            self.twilio_whatsapp_from,
        ])

    # ─────────────────────────────────────────────
    # Monitoring
    # ─────────────────────────────────────────────
    sentry_dsn: str = ""

    # ─────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────
    allowed_origins: str = "http://localhost:3000"

    # ─────────────────────────────────────────────
    # Rate Limiting
    # ─────────────────────────────────────────────
    rate_limit_general: str = "100/minute"
    rate_limit_claim: str = "5/minute"
    rate_limit_login: str = "5/15minutes"

    # ─────────────────────────────────────────────
    # Validators
    # ─────────────────────────────────────────────

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("jwt_secret_key must be at least 32 characters")
        return v

    @field_validator("activation_poll_attempts", "settlement_poll_attempts")
    @classmethod
    def validate_poll_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("poll attempts must be at least 1")
        return v

    @field_validator("activation_poll_interval_seconds", "settlement_poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("poll interval cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_claim_lock_ttl(self) -> "Settings":
        if self.claim_lock_ttl_seconds <= self.claim_worst_case_seconds:
            raise ValueError(
                f"claim_lock_ttl_seconds ({self.claim_lock_ttl_seconds}) must exceed the "
                f"worst-case claim duration ({self.claim_worst_case_seconds:.0f}s)"
            )
        return self

    # ─────────────────────────────────────────────
    # Computed properties
    # ─────────────────────────────────────────────

    @property
    def allowed_origins_list(self) -> List[str]:
        """Return CORS origins as a list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def allowed_stock_symbols_list(self) -> List[str]:
        return [s.strip().upper() for s in self.allowed_stock_symbols.split(",") if s.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def use_ssl(self) -> bool:
        """Whether SSL should be enforced (production/staging only)."""
        return self.environment in {"production", "staging"}

    @property
    def db_ssl_args(self) -> dict:
        """Extra SQLAlchemy connect_args for SSL in production."""
        if self.use_ssl and "postgresql" in self.database_url:
            return {"ssl": "require"}
        return {}

    @property
    def claim_worst_case_seconds(self) -> float:
        """Longest a claim can hold its lock with every broker call timing out.

        A settlement attempt can make two calls (trading view, then the
        account fallback); the rest are the one-off calls around the polls.
        """
        timeout = self.broker_timeout_seconds
        activation = self.activation_poll_attempts * (self.activation_poll_interval_seconds + timeout)
        settlement = self.settlement_poll_attempts * (self.settlement_poll_interval_seconds + 2 * timeout)
        return activation + settlement + _SINGLE_BROKER_CALLS * timeout

    @property
    def broker_is_sandbox(self) -> bool:
        return "sandbox" in self.alpaca_base_url


@lru_cache
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    _settings = Settings()
    logger.info(
        "Config loaded — env=%s debug=%s", _settings.environment, _settings.debug
    )
    return _settings


settings = get_settings()
