"""
Configuration for the coin ledger backend.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SIGNING_SECRET = "changeme"


class Settings(BaseSettings):
    """
    Service configuration.

    Every field can be overridden by the upper-cased environment variable of
    the same name (``SIGNING_SECRET``, ``LEDGER_DATABASE_URL``, ``PORT``...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = Field(default="TrueManga backend", description="Name reported by the health check")

    # Railway injects PORT and expects the service on all interfaces
    host: str = Field(default="0.0.0.0", description="Listen address")
    port: int = Field(default=3000, description="Listen port")
    log_level: str = Field(default="INFO", description="Log level")
    allowed_origins: list[str] = Field(default=["*"], description="CORS allowed origins")

    signing_secret: str = Field(
        default=DEFAULT_SIGNING_SECRET,
        description="HMAC secret for proxy URL signatures",
    )
    api_token: Optional[str] = Field(
        default=None,
        description="X-API-Key value for admin routes; admin routes are disabled when unset",
    )

    # Ledger backend: memory:// for local runs, otherwise a SQLAlchemy URL.
    # Purchases answer 501 while this is unset.
    ledger_database_url: Optional[str] = Field(default=None, description="Ledger backend URL")

    payout_rate: Decimal = Field(default=Decimal("0.75"), ge=0, le=1, description="Creator share of a purchase")
    view_reward_coins: int = Field(default=1, ge=0, description="Coins awarded per rewarded view")
    view_cooldown_seconds: int = Field(default=86400, gt=0, description="One rewarded view per item per window")
    max_commit_attempts: int = Field(default=5, ge=1, description="Optimistic retries before giving up")
    idempotency_wait_seconds: float = Field(default=10.0, gt=0, description="Wait on an in-flight duplicate")

    proxy_timeout_seconds: float = Field(default=15.0, gt=0, description="Upstream fetch timeout")
    proxy_cache_max_age: int = Field(default=86400, ge=0, description="Cache-Control max-age for proxied files")

    @property
    def ledger_configured(self) -> bool:
        return bool(self.ledger_database_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
