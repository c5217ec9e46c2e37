"""
Configuration for the load lifecycle and settlement core.

Settings come from environment variables prefixed FREIGHT_ (or a .env file):

    FREIGHT_CURRENCY=ETB
    FREIGHT_SHIPPER_COMMISSION_RATE=5
    FREIGHT_CARRIER_COMMISSION_RATE=5
    FREIGHT_MIN_BANK_ACCOUNT_LENGTH=10
    FREIGHT_NOTIFICATION_WORKERS=2
    FREIGHT_LOG_LEVEL=INFO
    FREIGHT_LOG_JSON=false
"""

import logging
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .fees import CommissionRates, DEFAULT_COMMISSION_RATE, MAX_COMMISSION_RATE
from .money import DEFAULT_CURRENCY


class FreightSettings(BaseSettings):
    """Environment-driven settings."""

    model_config = SettingsConfigDict(
        env_prefix="FREIGHT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    currency: str = DEFAULT_CURRENCY
    shipper_commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    carrier_commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    min_bank_account_length: int = Field(10, ge=1)
    notification_workers: int = Field(2, ge=1)
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("shipper_commission_rate", "carrier_commission_rate")
    @classmethod
    def _rate_in_range(cls, value: Decimal) -> Decimal:
        if not (value.is_finite() and Decimal("0") < value <= MAX_COMMISSION_RATE):
            raise ValueError(f"commission rate must be in (0, {MAX_COMMISSION_RATE}]")
        return value

    def commission_rates(self) -> CommissionRates:
        return CommissionRates(self.shipper_commission_rate, self.carrier_commission_rate)


# Global settings instance
_settings: Optional[FreightSettings] = None


def get_settings() -> FreightSettings:
    """
    Get the global settings instance.

    Returns:
        FreightSettings singleton, loaded from the environment on first use.
    """
    global _settings
    if _settings is None:
        _settings = FreightSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None


def configure_logging(settings: Optional[FreightSettings] = None) -> None:
    """
    Configure structlog for the host process.

    Called by the embedding application at startup; importing the package
    never configures logging.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
