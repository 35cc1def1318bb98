from functools import lru_cache
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    # Do not generate security-sensitive secrets at runtime.
    # Require explicit configuration via environment / .env for all non-test runs.
    return Settings()


def reload_settings_from_environment() -> "Settings":
    """Rebuild cached settings from environment values (used by tests and scripts)."""
    logger = structlog.get_logger()
    get_settings.cache_clear()
    refreshed = get_settings()
    logger.info("settings_reloaded", environment=refreshed.ENVIRONMENT)
    return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the storefront billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Pragmatienda Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    API_PREFIX: str = "/api"

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False

    # Celery broker / result backend
    REDIS_URL: Optional[str] = None

    # Base URLs used for OAuth redirects and webhook notification targets
    FRONTEND_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"

    # Security
    SECURITY_ENCRYPTION_KEY: Optional[str] = None
    JWT_SECRET: Optional[str] = None
    JWT_AUDIENCE: str = "authenticated"
    # Shared secret for scheduler-triggered internal endpoints
    INTERNAL_JOB_SECRET: Optional[str] = None

    # Mercado Pago marketplace (store payments)
    MP_CLIENT_ID: Optional[str] = None
    MP_CLIENT_SECRET: Optional[str] = None
    MP_REDIRECT_URI: Optional[str] = None
    MP_MARKETPLACE_FEE: Optional[float] = None
    MP_ENV: str = "sandbox"
    MP_API_URL: str = "https://api.mercadopago.com"
    MP_AUTH_URL: str = "https://auth.mercadopago.com/authorization"
    MP_WEBHOOK_SECRET: Optional[str] = None

    # Mercado Pago platform billing (tenant subscriptions)
    MP_BILLING_ACCESS_TOKEN: Optional[str] = None
    MP_BILLING_SUCCESS_URL: Optional[str] = None
    MP_BILLING_REASON_PREFIX: str = "Pragmatienda"
    MP_SUBSCRIPTION_CHECKOUT_URL: str = (
        "https://www.mercadopago.com.ar/subscriptions/checkout"
    )

    # Billing policy
    BILLING_ALLOW_PAST_DUE: bool = False
    IDEMPOTENCY_TTL_MINUTES: int = 30
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 30.0
    SUBSCRIPTION_SYNC_CRON_MINUTES: int = 60

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_billing_config()
        return self

    def _validate_core_secrets(self) -> None:
        """Secrets must be strong outside local development."""
        if self.ENVIRONMENT not in {ENV_PRODUCTION, ENV_STAGING}:
            return
        critical_keys = {
            "SECURITY_ENCRYPTION_KEY": self.SECURITY_ENCRYPTION_KEY,
            "JWT_SECRET": self.JWT_SECRET,
        }
        for name, value in critical_keys.items():
            if not value or len(value) < 32:
                raise ValueError(f"{name} must be set to a secure value (>= 32 chars).")
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in staging/production.")

    def _validate_billing_config(self) -> None:
        """Validates Mercado Pago numeric and policy settings."""
        if self.MP_MARKETPLACE_FEE is not None and self.MP_MARKETPLACE_FEE < 0:
            raise ValueError("MP_MARKETPLACE_FEE must be >= 0.")
        if self.IDEMPOTENCY_TTL_MINUTES < 1:
            raise ValueError("IDEMPOTENCY_TTL_MINUTES must be >= 1.")
        if self.PROVIDER_HTTP_TIMEOUT_SECONDS <= 0:
            raise ValueError("PROVIDER_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.is_production and self.BILLING_ALLOW_PAST_DUE:
            structlog.get_logger().warning(
                "billing_past_due_override_enabled", environment=self.ENVIRONMENT
            )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION

    @property
    def webhook_notification_url(self) -> str:
        return (
            f"{self.BACKEND_URL.rstrip('/')}{self.API_PREFIX}"
            "/payments/webhooks/mercadopago"
        )
