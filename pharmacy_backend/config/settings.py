"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./pharmacy.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # M-Pesa (Daraja) Configuration
    mpesa_consumer_key: Optional[str] = Field(default=None, description="Daraja consumer key")
    mpesa_consumer_secret: Optional[str] = Field(
        default=None, description="Daraja consumer secret"
    )
    mpesa_business_shortcode: Optional[str] = Field(
        default=None, description="Paybill / till shortcode"
    )
    mpesa_passkey: Optional[str] = Field(default=None, description="Lipa na M-Pesa passkey")
    mpesa_callback_url: Optional[str] = Field(
        default=None, description="Public URL Safaricom posts STK results to"
    )
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_timeout_seconds: float = Field(default=30.0, description="Gateway request timeout")
    mpesa_max_retries: int = Field(default=3, description="Max attempts for transient errors")

    # Authentication
    jwt_secret: str = Field(default="change-me", description="Access token signing secret")
    jwt_algorithm: str = Field(default="HS256", description="Access token algorithm")
    access_token_ttl_minutes: int = Field(default=60, description="Access token lifetime")
    refresh_token_ttl_days: int = Field(default=30, description="Refresh token lifetime")
    bcrypt_rounds: int = Field(default=12, description="bcrypt work factor")

    # Orders
    order_number_prefix: str = Field(default="MP", description="Order number tag")
    order_number_max_attempts: int = Field(
        default=3, description="Attempts before giving up on order number collisions"
    )
    delivery_window_hours: int = Field(default=48, description="Estimated delivery offset")
    total_tolerance: Decimal = Field(
        default=Decimal("0.01"), description="Accepted client/server total difference"
    )

    # Reconciliation
    stale_payment_minutes: int = Field(
        default=10, description="Age after which initiated payments are polled"
    )
    reconciliation_interval_seconds: int = Field(
        default=300, description="Interval between reconciliation worker runs"
    )

    # Application Configuration
    app_name: str = Field(default="pharmacy-backend", description="Application name")
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

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("mpesa_environment")
    @classmethod
    def validate_mpesa_environment(cls, v: str) -> str:
        """Only the two Daraja environments exist."""
        v = v.lower()
        if v not in MPESA_BASE_URLS:
            raise ValueError(
                f"Invalid M-Pesa environment. Must be one of: {list(MPESA_BASE_URLS)}"
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

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def mpesa_base_url(self) -> str:
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
