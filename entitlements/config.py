"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.

Platform credentials (Stripe keys, price ids, Apple shared secret and
product mapping) are required. A missing value stops the process at
startup with a ``ConfigurationError``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from entitlements.core.errors import ConfigurationError

PAID_PLANS = ("monthly", "yearly", "lifetime")


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
    PORT: int = Field(default=8000)

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication
    JWT_SECRET: str = Field(default="change-this-secret-in-production-please")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # Stripe
    STRIPE_SECRET_KEY: str = Field(min_length=1)
    STRIPE_WEBHOOK_SECRET: str = Field(min_length=1)
    STRIPE_PRICE_MONTHLY: str = Field(min_length=1)
    STRIPE_PRICE_YEARLY: str = Field(min_length=1)
    STRIPE_PRICE_LIFETIME: Optional[str] = Field(default=None)
    STRIPE_TRIAL_DAYS: int = Field(default=7, ge=0)

    # Apple App Store
    APPLE_SHARED_SECRET: str = Field(min_length=1)
    APPLE_PRODUCT_PLANS: Dict[str, str] = Field(
        description="JSON object mapping App Store product ids to plans",
    )
    APPLE_ROOT_CA_PATH: str = Field(min_length=1)
    APPLE_BUNDLE_ID: Optional[str] = Field(default=None)

    # Reconciliation
    WEBHOOK_EVENT_TTL_DAYS: int = Field(default=30, ge=1)
    PLATFORM_REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    RECONCILE_MAX_RETRIES: int = Field(default=3, ge=1)
    EXPIRY_SWEEP_ENABLED: bool = Field(default=True)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = Field(default=3600, ge=1)

    # App Configuration
    FRONTEND_URL: str = Field(default="http://localhost:3000")
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def webhook_event_ttl_seconds(self) -> int:
        return self.WEBHOOK_EVENT_TTL_DAYS * 86400

    @property
    def stripe_price_plans(self) -> Dict[str, str]:
        """Map configured Stripe price ids back to plan names."""
        prices = {
            self.STRIPE_PRICE_MONTHLY: "monthly",
            self.STRIPE_PRICE_YEARLY: "yearly",
        }
        if self.STRIPE_PRICE_LIFETIME:
            prices[self.STRIPE_PRICE_LIFETIME] = "lifetime"
        return prices

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @field_validator("APPLE_PRODUCT_PLANS")
    @classmethod
    def validate_apple_product_plans(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Every App Store product must map to a paid plan."""
        if not v:
            raise ValueError("APPLE_PRODUCT_PLANS must map at least one product")
        for product_id, plan in v.items():
            if plan not in PAID_PLANS:
                raise ValueError(
                    f"APPLE_PRODUCT_PLANS[{product_id!r}] must be one of {PAID_PLANS}"
                )
        return v

    @field_validator("APPLE_ROOT_CA_PATH")
    @classmethod
    def validate_apple_root_ca_path(cls, v: str) -> str:
        if not Path(v).is_file():
            raise ValueError(f"APPLE_ROOT_CA_PATH does not exist: {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.

    Raises:
        ConfigurationError: If a required platform setting is missing
            or invalid.
    """
    try:
        return Settings()
    except ValidationError as exc:
        missing = ", ".join(
            ".".join(str(loc) for loc in err["loc"]) for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {missing}") from exc


# Export a default settings instance
settings = get_settings()
