"""Metering engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class MeterEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with METER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: MeterEnv = MeterEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.meter/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Billing
    cost_quantum: Decimal = Decimal("0.01")

    # Tariff lookups
    tariff_cache_ttl_seconds: int = 300
    tariff_cache_max_entries: int = 10_000
    tariff_cache_enabled: bool = True

    @field_validator("cost_quantum")
    @classmethod
    def _quantum_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("cost_quantum must be positive")
        return v

    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
