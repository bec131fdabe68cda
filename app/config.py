"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

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

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database - Supabase
    SUPABASE_URL: str = Field(default="")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="")
    SUPABASE_DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication (Supabase-issued access tokens)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # RevenueCat
    REVENUECAT_API_KEY: str = Field(default="")
    REVENUECAT_WEBHOOK_SECRET: str = Field(default="")
    REVENUECAT_ENTITLEMENT_ID: str = Field(default="pro")

    # Entitlement verification
    ENTITLEMENT_GRACE_PERIOD_SECONDS: int = Field(
        default=3 * 86400,
        description="How long entitlement survives past expiry without re-verification",
    )
    VERIFY_TIMEOUT_SECONDS: float = Field(default=10.0)
    VERIFY_MAX_ATTEMPTS: int = Field(default=3)
    VERIFY_BACKOFF_BASE_SECONDS: float = Field(default=1.0)
    VERIFY_BACKOFF_FACTOR: float = Field(default=4.0)

    # App Configuration
    API_BASE_URL: str = Field(default="http://localhost:8000")
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.SUPABASE_DATABASE_URL:
            return self.SUPABASE_DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @field_validator(
        "ENTITLEMENT_GRACE_PERIOD_SECONDS",
        "VERIFY_TIMEOUT_SECONDS",
        "VERIFY_MAX_ATTEMPTS",
        "VERIFY_BACKOFF_FACTOR",
    )
    @classmethod
    def validate_positive(cls, v):
        """Entitlement tuning values must be positive."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("VERIFY_BACKOFF_BASE_SECONDS")
    @classmethod
    def validate_backoff_base(cls, v: float) -> float:
        if v < 0:
            raise ValueError("VERIFY_BACKOFF_BASE_SECONDS cannot be negative")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
