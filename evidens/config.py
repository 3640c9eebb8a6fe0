"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, PagarmeConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    BILLING__FAILURE_SUSPENSION_THRESHOLD=4
    PAGARME__WEBHOOK_USER=evidens
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseModel):
    """Billing rules that may vary per environment."""

    # Consecutive failed charges before an account is suspended
    failure_suspension_threshold: int = Field(default=3, ge=1)
    # Smallest amount (minor units) the provider accepts for a charge
    minimum_charge_amount: int = Field(default=50, ge=1)
    # Access days granted when a plan row has no `days` column set
    default_plan_days: int = Field(default=30, ge=1)

    accounts_table: str = "Practitioners"
    subscriptions_table: str = "evidens_subscriptions"
    plans_table: str = "PaymentPlans"
    webhook_events_table: str = "pagarme_webhook_events"


class PagarmeConfig(BaseModel):
    """Pagar.me API and webhook configuration."""

    api_url: str = "https://api.pagar.me/core/v5"
    secret_key: str = ""
    webhook_user: str = ""
    webhook_password: str = ""
    request_timeout_seconds: float = 30.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    pagarme: PagarmeConfig = Field(default_factory=PagarmeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
