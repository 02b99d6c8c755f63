"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PayChangu Configuration
    paychangu_secret_key: str = Field(..., description="PayChangu secret API key")
    paychangu_api_base_url: str = Field(
        default="https://api.paychangu.com", description="PayChangu API base URL"
    )
    paychangu_webhook_secret: Optional[str] = Field(
        default=None,
        description="Webhook signing secret (unsigned webhooks are accepted when empty)",
    )
    paychangu_signature_header: str = Field(
        default="Signature", description="Header carrying the webhook HMAC signature"
    )
    paychangu_callback_url: str = Field(
        default="http://localhost:8000/webhooks/paychangu",
        description="URL PayChangu pushes payment notifications to",
    )
    paychangu_return_url: str = Field(
        default="http://localhost:3000/payment-success",
        description="URL the customer is sent back to after checkout",
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Timeout for payment provider HTTP calls (seconds)"
    )

    # Identity provider
    identity_url: str = Field(
        default="http://localhost:54321", description="Identity provider base URL"
    )
    identity_api_key: str = Field(default="", description="Identity provider API key")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    rate_limit_backend: str = Field(
        default="memory", description="Rate limiter backend (memory/redis)"
    )

    # Rate limiting
    checkout_rate_limit: int = Field(default=5, description="Checkouts allowed per user per window")
    checkout_rate_window_seconds: float = Field(default=60.0, description="Checkout window (seconds)")
    verify_rate_limit: int = Field(default=10, description="Verifications allowed per tx ref per window")
    verify_rate_window_seconds: float = Field(default=60.0, description="Verification window (seconds)")
    webhook_cooldown_seconds: float = Field(
        default=5.0, description="Window collapsing duplicate webhook pushes per tx ref"
    )

    # Settlement
    amount_tolerance: int = Field(
        default=1, description="Allowed difference between recorded and verified amounts"
    )
    default_entitlement_days: int = Field(
        default=30, description="Subscription length when the tier does not define one"
    )

    # Reconciliation
    reconciliation_interval_minutes: int = Field(
        default=15, description="Minutes between pending-payment sweeps"
    )
    reconciliation_min_age_minutes: int = Field(
        default=5, description="Pending payments younger than this are left to the webhook"
    )
    reconciliation_max_age_hours: int = Field(
        default=48, description="Pending payments older than this are treated as abandoned"
    )

    # Application Configuration
    app_name: str = Field(default="payment-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Validate rate limiter backend name."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("Invalid rate limit backend. Must be 'memory' or 'redis'")
        return v.lower()

    @field_validator("paychangu_webhook_secret")
    @classmethod
    def normalize_webhook_secret(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank secret as not configured."""
        if v is not None and not v.strip():
            return None
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def webhook_signing_enabled(self) -> bool:
        """Check if webhook signatures are enforced."""
        return bool(self.paychangu_webhook_secret)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
