"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from subsync.errors import ConfigurationError


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret used to sign webhook deliveries",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Maximum age of a webhook signature timestamp",
    )
    retry_unknown_subscriptions: bool = Field(
        default=True,
        description="Answer 500 for events about subscriptions not stored yet",
    )
    webhook_server_host: str = Field(
        default="0.0.0.0",
        description="Bind address for the webhook server",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the webhook server",
    )
    checkout_success_url: str = Field(
        default="http://localhost:8888/dashboard.html?subscription=success",
        description="Redirect after a completed checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:8888/pricing.html",
        description="Redirect after an abandoned checkout",
    )
    portal_return_url: str = Field(
        default="http://localhost:8888/billing.html",
        description="Return URL for billing portal sessions",
    )
    stripe_price_standard_monthly: str = Field(default="")
    stripe_price_standard_yearly: str = Field(default="")
    stripe_price_plus_monthly: str = Field(default="")
    stripe_price_plus_yearly: str = Field(default="")
    stripe_price_premium_monthly: str = Field(default="")
    stripe_price_premium_yearly: str = Field(default="")
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    def price_id(self, plan_type: str, billing_period: str) -> str:
        """Look up the configured provider price for a plan/period pair.

        Returns an empty string when the combination is not configured.
        """
        key = f"stripe_price_{plan_type.lower()}_{billing_period.lower()}"
        return getattr(self, key, "") or ""

    def require_billing(self) -> None:
        """Fail fast when the secrets the billing engine needs are missing.

        Raises:
            ConfigurationError: Listing every missing setting
        """
        missing = [
            name
            for name in ("stripe_secret", "stripe_webhook_secret")
            if not getattr(self, name).get_secret_value()
        ]
        if missing:
            raise ConfigurationError(
                "Billing configuration incomplete",
                details={"missing": missing},
            )


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
