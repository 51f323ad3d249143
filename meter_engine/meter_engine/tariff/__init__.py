"""Tariff lookups for meterable resources."""

from meter_engine.tariff.cache import TariffCache

__all__ = ["TariffCache"]
