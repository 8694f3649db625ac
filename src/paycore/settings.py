"""
Process-wide settings for paycore.

Values come from the environment (or a local ``.env``). Nested groups use a
double underscore, so ``BILLING__MAX_PAYMENT_ATTEMPTS=5`` lands in
``settings.billing.max_payment_attempts``. Billing code reads these through
``paycore.billing.config.BillingConfig.from_settings`` rather than directly.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseSettings(BaseModel):
    """Where subscriptions and invoices are persisted."""

    url: str | None = Field(None, description="Async SQLAlchemy URL; overrides sqlite_path")
    sqlite_path: str = Field("./paycore_dev.sqlite", description="Local SQLite file")
    echo: bool = Field(False, description="Log emitted SQL")

    @property
    def sqlalchemy_url(self) -> str:
        return self.url or f"sqlite+aiosqlite:///{self.sqlite_path}"


class ObservabilitySettings(BaseModel):
    log_level: LogLevel = Field(LogLevel.INFO, description="Root log level")
    log_format: str = Field("json", description="'json' or 'console'")
    enable_correlation_ids: bool = Field(
        True, description="Merge structlog contextvars (tick id, subscription id)"
    )


class BillingSettings(BaseModel):
    """Knobs for the recurring billing engine."""

    default_currency: str = Field("USD", description="Currency for plans created without one")
    default_locale: str = Field("en_US", description="Locale for rendered amounts")

    max_payment_attempts: int = Field(3, description="Failed charges before a subscription is unpaid")
    retry_delays_days: list[int] = Field(
        default_factory=lambda: [1, 3, 7],
        description="Wait after the n-th failed charge; the last entry repeats",
    )

    tick_interval_seconds: float = Field(300.0, description="Sleep between scheduler ticks")
    item_pause_seconds: float = Field(0.1, description="Sleep between subscriptions in a tick")
    claim_lease_seconds: int = Field(900, description="Lease taken on a due subscription")

    gateway_provider: str = Field("sandbox", description="Registered gateway name")
    charge_timeout_seconds: float = Field(30.0, description="Upper bound on one gateway charge")

    webhook_emit_timeout_seconds: float = Field(5.0, description="Upper bound on one webhook emit")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = "paycore"
    environment: Environment = Environment.DEVELOPMENT
    testing: bool = False

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def _lowercase_environment(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.testing or self.environment == Environment.TEST


_settings: Settings | None = None


def get_settings() -> Settings:
    """Build settings on first use and cache them for the process."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached instance so the next ``get_settings`` re-reads the environment."""
    global _settings
    _settings = None
