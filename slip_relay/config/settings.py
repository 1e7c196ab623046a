"""Application settings using Pydantic for environment-based configuration."""
from enum import Enum
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CheckoutFlow(str, Enum):
    """Which checkout flow the relay runs."""

    AUTHORIZE = "authorize"  # manual-capture hold, captured after approval
    CARD_ON_FILE = "card_on_file"  # setup-mode session, charged off-session after approval


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(
        default="",
        description="Stripe webhook signing secret (empty: notifications are accepted and ignored)",
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    currency: str = Field(default="usd", description="Charge currency")
    processor_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts for transient Stripe failures"
    )
    processor_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )

    # Ledger (Apps Script web app) Configuration
    ledger_url: str = Field(..., description="Reservation ledger web app URL")
    ledger_token: str = Field(default="", description="Shared token sent with every ledger call")
    ledger_timeout_seconds: float = Field(default=30.0, description="Ledger HTTP timeout")

    # Flow toggles
    checkout_flow: CheckoutFlow = Field(
        default=CheckoutFlow.AUTHORIZE, description="authorize or card_on_file"
    )
    connect_enabled: bool = Field(
        default=False, description="Route funds to per-location connected accounts"
    )
    platform_fee_bps: int = Field(default=0, ge=0, description="Platform fee in basis points")
    platform_fee_fixed_cents: int = Field(
        default=0, ge=0, description="Fixed platform fee in minor units"
    )
    connect_business_type: str = Field(
        default="", description="Business type for new connected accounts"
    )
    connect_country: str = Field(default="", description="Country for new connected accounts")

    # Redirect pages
    success_url_base: str = Field(
        default="https://sliprezi-reserve-final.tiiny.site/success.html",
        description="Checkout success page",
    )
    cancel_url_base: str = Field(
        default="https://sliprezi-reserve-final.tiiny.site/cancel.html",
        description="Checkout cancel page",
    )
    payment_action_url_base: str = Field(
        default="https://sliprezi-reserve-final.tiiny.site/complete-payment.html",
        description="Page that completes a payment needing cardholder authentication",
    )
    connect_refresh_url: str = Field(
        default="https://sliprezi-reserve-final.tiiny.site/connect-refresh.html",
        description="Onboarding refresh page",
    )
    connect_return_url: str = Field(
        default="https://sliprezi-reserve-final.tiiny.site/connect-return.html",
        description="Onboarding return page",
    )

    # Application Configuration
    app_name: str = Field(default="slip-relay", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=4242, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,https://sliprezi-reserve-final.tiiny.site",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate the Stripe secret key prefix."""
        if not v.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return "_test_" in self.stripe_secret_key[:8]

    @property
    def webhook_verification_enabled(self) -> bool:
        return bool(self.stripe_webhook_secret)

    @property
    def card_on_file(self) -> bool:
        return self.checkout_flow is CheckoutFlow.CARD_ON_FILE


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Only the process entrypoint calls this; components receive the
    instance through their constructors.
    """
    return Settings()
