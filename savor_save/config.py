"""Configuration management for the ledger service."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

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

    # Store Configuration
    store_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Persistent store backend"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    realtime_channel_prefix: str = Field(
        default="realtime", description="Pub/sub channel prefix for change events"
    )

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Locale
    timezone: str = Field(default="Asia/Kolkata", description="Timezone for period windows")
    currency: str = Field(default="INR", description="ISO currency code")
    currency_symbol: str = Field(default="₹", description="Symbol used in notifications")

    # Budget Settings
    default_daily_budget: Decimal = Field(default=Decimal("400"), ge=0)
    default_weekly_budget: Decimal = Field(default=Decimal("2500"), ge=0)
    default_monthly_budget: Decimal = Field(default=Decimal("10000"), ge=0)
    default_alert_threshold: Decimal = Field(
        default=Decimal("80"), ge=0, le=100, description="Alert threshold percentage"
    )
    dedupe_budget_alerts: bool = Field(
        default=False,
        description="Emit one budget alert per period window and level",
    )

    # Order Settings
    strict_transitions: bool = Field(
        default=True,
        description="Reject backward moves and moves out of terminal statuses",
    )
    allow_anonymous: bool = Field(
        default=True,
        description="Let sessions without a user write to the shared guest partition",
    )
    tax_rate: Decimal = Field(default=Decimal("0.05"), ge=0, description="Order tax rate")
    delivery_fee: Decimal = Field(default=Decimal("40"), ge=0, description="Flat delivery fee")

    # Delivery Estimates
    avg_delivery_speed_kmh: float = Field(default=30.0, gt=0)
    delivery_buffer_minutes: int = Field(default=10, ge=0)
    default_preparation_minutes: int = Field(default=20, ge=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone name resolves."""
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        """Timezone used for local calendar boundaries."""
        return ZoneInfo(self.timezone)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
