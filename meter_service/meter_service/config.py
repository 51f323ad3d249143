"""Service-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerBackend(str, Enum):
    """Where finalized billing records are appended."""

    DATABASE = "database"
    FILE = "file"


class ServiceSettings(BaseSettings):
    """Session service, sweeper and reconciler settings.

    All values can be overridden via environment variables prefixed with
    ``METER_SERVICE_`` (e.g. ``METER_SERVICE_SWEEP_INTERVAL_SECONDS=5``) or
    through a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="METER_SERVICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Expiration sweeper cadence and batch size.
    sweep_interval_seconds: float = 15.0
    sweep_batch_size: int = 500

    # Compare-and-swap attempts per mutation before ConcurrentModification.
    max_transition_attempts: int = 3

    # Revenue ledger sink.
    ledger_backend: LedgerBackend = LedgerBackend.DATABASE
    ledger_file_path: str = ".meter/ledger.jsonl"

    # Logging.
    structured_logging: bool = False
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _validate_positive(self) -> Self:
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.sweep_batch_size < 1:
            raise ValueError("sweep_batch_size must be at least 1")
        if self.max_transition_attempts < 1:
            raise ValueError("max_transition_attempts must be at least 1")
        return self


def load_service_settings(**overrides: object) -> ServiceSettings:
    """Load service settings from the environment, with optional overrides."""
    return ServiceSettings(**overrides)  # type: ignore[arg-type]
