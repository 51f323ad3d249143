"""Unit tests for meter_engine.config."""

from __future__ import annotations

from decimal import Decimal

import pytest
from meter_engine.config import MeterEnv, Settings, load_settings
from pydantic import ValidationError

# ---------------------------------------------------------------------------
# Settings - default values
# ---------------------------------------------------------------------------


class TestSettingsDefaults:
    def test_default_env(self):
        settings = Settings()
        assert settings.env == MeterEnv.DEV

    def test_default_database_url_is_local_sqlite(self):
        settings = Settings()
        assert settings.database_url.startswith("sqlite+aiosqlite")
        assert settings.is_sqlite() is True

    def test_default_cost_quantum(self):
        settings = Settings()
        assert settings.cost_quantum == Decimal("0.01")

    def test_default_tariff_cache(self):
        settings = Settings()
        assert settings.tariff_cache_enabled is True
        assert settings.tariff_cache_ttl_seconds == 300
        assert settings.tariff_cache_max_entries == 10_000


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------


class TestSettingsEnvOverrides:
    def test_env_var_overrides_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("METER_ENV", "prod")
        settings = Settings()
        assert settings.env == MeterEnv.PROD

    def test_env_var_overrides_database_url(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("METER_DATABASE_URL", "postgresql+asyncpg://meter:meter@db/meter")
        settings = Settings()
        assert settings.is_sqlite() is False

    def test_env_var_overrides_quantum(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("METER_COST_QUANTUM", "0.05")
        settings = Settings()
        assert settings.cost_quantum == Decimal("0.05")

    def test_env_var_disables_cache(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("METER_TARIFF_CACHE_ENABLED", "false")
        settings = Settings()
        assert settings.tariff_cache_enabled is False


# ---------------------------------------------------------------------------
# Validation and load_settings
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("quantum", ["0", "-0.01"])
    def test_non_positive_quantum_rejected(self, quantum: str):
        with pytest.raises(ValidationError):
            Settings(cost_quantum=Decimal(quantum))


class TestLoadSettings:
    def test_load_defaults(self):
        settings = load_settings()
        assert isinstance(settings, Settings)

    def test_load_with_overrides(self):
        settings = load_settings(database_url="sqlite+aiosqlite:///:memory:", debug=True)
        assert settings.database_url == "sqlite+aiosqlite:///:memory:"
        assert settings.debug is True


class TestEnums:
    def test_meter_env_values(self):
        assert {e.value for e in MeterEnv} == {"dev", "staging", "prod"}
