from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the ChainSync billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "ChainSync"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Celery broker for the billing sweep
    REDIS_URL: Optional[str] = None

    # Payment providers
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_WEBHOOK_SECRET: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_ENABLED: bool = True
    FLUTTERWAVE_SECRET_KEY: Optional[str] = None
    FLUTTERWAVE_WEBHOOK_SECRET: Optional[str] = None
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com/v3"
    FLUTTERWAVE_ENABLED: bool = True

    # Webhook ingestion
    WEBHOOK_ALLOWED_SKEW_SECONDS: int = 300
    WEBHOOK_REPLAY_TTL_SECONDS: int = 600
    # memory | database
    WEBHOOK_IDEMPOTENCY_BACKEND: str = "database"

    # Subscription billing
    BILLING_PERIOD_DAYS: int = 30
    BILLING_CHARGE_TIMEOUT_SECONDS: float = 30.0
    BILLING_CLAIM_TTL_SECONDS: int = 900
    BILLING_SWEEP_ENABLED: bool = True
    BILLING_SWEEP_HOUR_UTC: int = 6
    ORG_LOCK_GRACE_DAYS: int = 3
    TRIAL_LENGTH_DAYS: int = 14

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    @property
    def paystack_webhook_secret(self) -> Optional[str]:
        return self.PAYSTACK_WEBHOOK_SECRET or self.PAYSTACK_SECRET_KEY

    @property
    def flutterwave_webhook_secret(self) -> Optional[str]:
        return self.FLUTTERWAVE_WEBHOOK_SECRET or self.FLUTTERWAVE_SECRET_KEY

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        self._validate_webhook_config()
        if self.TESTING:
            return self

        self._validate_billing_config()
        return self

    def _validate_webhook_config(self) -> None:
        if self.WEBHOOK_ALLOWED_SKEW_SECONDS <= 0:
            raise ValueError("WEBHOOK_ALLOWED_SKEW_SECONDS must be positive.")
        if self.WEBHOOK_REPLAY_TTL_SECONDS <= 0:
            raise ValueError("WEBHOOK_REPLAY_TTL_SECONDS must be positive.")
        if self.WEBHOOK_IDEMPOTENCY_BACKEND not in {"memory", "database"}:
            raise ValueError(
                "WEBHOOK_IDEMPOTENCY_BACKEND must be one of: memory, database."
            )

    def _validate_billing_config(self) -> None:
        """Provider secrets are mandatory outside development."""
        if not self.is_production:
            return
        if self.PAYSTACK_ENABLED and not self.paystack_webhook_secret:
            raise ValueError(
                "PAYSTACK_SECRET_KEY or PAYSTACK_WEBHOOK_SECRET is required in production."
            )
        if self.FLUTTERWAVE_ENABLED and not self.flutterwave_webhook_secret:
            raise ValueError(
                "FLUTTERWAVE_SECRET_KEY or FLUTTERWAVE_WEBHOOK_SECRET is required in production."
            )
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
