"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(
        default="", description="Stripe publishable key handed to the front end"
    )
    stripe_webhook_secret: Optional[str] = Field(
        default=None,
        description="Stripe webhook signing secret (absent = unverified webhooks)",
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    currency: str = Field(
        default="usd",
        validation_alias="PAYMENT_CURRENCY",
        description="Currency code for authorizations",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payments.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for the processed-event cache"
    )
    ledger_cache_ttl: int = Field(
        default=86400 * 7, description="Processed-event cache TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="order-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key: Optional[str] = Field(
        default=None, description="Shared API key required on authenticated routes"
    )
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Gateway calls
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway call attempts")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    gateway_timeout_seconds: float = Field(default=20, description="Gateway request timeout")
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive failures before the circuit opens"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before an open circuit is retried"
    )

    # Webhooks
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp"
    )
    processed_event_retention_days: int = Field(
        default=30, description="Days to keep processed webhook event ids"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate the Stripe secret key format."""
        if not v.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter code; Stripe expects lower case."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("processed_event_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        """Stripe redelivers for up to three days; keep ids longer than that."""
        if v <= 3:
            raise ValueError("Processed event retention must exceed 3 days")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return "_test_" in self.stripe_secret_key

    @property
    def webhook_low_trust(self) -> bool:
        """True when inbound webhooks cannot be authenticated."""
        return not self.stripe_webhook_secret


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
