"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Database Configuration
    # ===================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./tradedesk.db",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    # ===================
    # Payment Configuration
    # ===================
    payment_provider: Literal["mock", "stripe"] = Field(
        default="mock",
        description="Escrow backend, selected once at process start",
    )
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_api_url: str = Field(
        default="https://api.stripe.com",
        description="Stripe REST API base URL",
    )
    currency: str = Field(default="usd", description="ISO currency code for escrow holds")
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single payment provider round trip",
    )

    # ===================
    # Trade Lifecycle
    # ===================
    rating_window_days: int = Field(
        default=7,
        ge=1,
        description="Days both parties have to rate after a trade settles",
    )

    # ===================
    # API Configuration
    # ===================
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated allowed CORS origins",
    )

    # ===================
    # Rate Limiting
    # ===================
    redis_url: Optional[str] = Field(default=None, description="Redis URL for rate-limit storage")
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_global: str = Field(default="120/minute")
    rate_limit_write: str = Field(
        default="30/minute",
        description="Per-user limit on endpoints that create trades or move money",
    )

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency codes are three letters, stored lowercase."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO code")
        return v.lower()

    @property
    def allowed_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
