"""State persistence layer using SQLAlchemy (PostgreSQL or SQLite)."""

from meter_engine.state.database import dispose_engine, get_engine, get_session, get_session_factory
from meter_engine.state.repository import (
    LedgerRepository,
    SessionRepository,
    TariffRepository,
    TenantPolicyRepository,
)

__all__ = [
    "LedgerRepository",
    "SessionRepository",
    "TariffRepository",
    "TenantPolicyRepository",
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
]
