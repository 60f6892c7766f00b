"""Runtime configuration for the credit metering service using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.subscription import PlanName


class Settings(BaseSettings):
    """Credit metering settings, read from ``CREDIT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============ Storage ============
    MONGO_URI: Optional[str] = Field(
        default=None,
        description="MongoDB connection URI. When unset the in-memory store is used.",
    )
    MONGO_DB: str = "credit_metering"
    USAGE_LOG_PATH: Path = Path("logs/credit_usage.log")

    # ============ Logging ============
    LOG_LEVEL: str = "INFO"

    # ============ External billing ============
    STRIPE_SECRET_KEY: Optional[SecretStr] = None
    STRIPE_WEBHOOK_SECRET: Optional[SecretStr] = None
    STRIPE_PRICE_BASIC: str = "price_basic"
    STRIPE_PRICE_STANDARD: str = "price_standard"
    STRIPE_PRICE_PRO: str = "price_pro"
    STRIPE_USER_ID_METADATA_KEY: str = "user_id"
    ENTITLEMENT_CACHE_TTL_SECONDS: int = 60
    WEBHOOK_DEDUP_TTL_SECONDS: int = 7 * 24 * 3600

    # ============ Credit policy ============
    DEFAULT_PLAN: PlanName = PlanName.FREE
    AUTO_PROVISION: bool = True
    ALLOW_UNMAPPED_ACTIONS: bool = False
    CONSUME_MAX_RETRIES: int = Field(default=5, ge=0)
    BILLING_PERIOD_DAYS: int = Field(default=30, gt=0)

    # ============ HTTP ============
    ADMIN_API_TOKEN: Optional[SecretStr] = None
    USER_ID_HEADER: str = "X-User-Id"
    USER_EMAIL_HEADER: str = "X-User-Email"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
