"""Domain models for metered sessions, tenant policies and billing records."""

from meter_engine.models.billing import BillingRecord
from meter_engine.models.policy import TariffResource, TenantMeteringPolicy
from meter_engine.models.session import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    MeteredSession,
    PauseInterval,
    SessionAction,
    SessionActionRecord,
    SessionMode,
    SessionStatus,
    SessionView,
)

__all__ = [
    "ACTIVE_STATUSES",
    "BillingRecord",
    "MeteredSession",
    "PauseInterval",
    "SessionAction",
    "SessionActionRecord",
    "SessionMode",
    "SessionStatus",
    "SessionView",
    "TERMINAL_STATUSES",
    "TariffResource",
    "TenantMeteringPolicy",
]
