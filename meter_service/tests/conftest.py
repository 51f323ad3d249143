"""Shared fixtures for the metering service tests.

Provides an in-memory SQLite engine, a controllable clock, and a
``SessionService`` wired to both, plus helpers to seed tenant policies and
tariffs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from meter_engine.config import Settings
from meter_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from meter_engine.tariff.cache import TariffCache
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from meter_service.config import ServiceSettings
from meter_service.ledger import DatabaseLedger
from meter_service.services.revenue_reconciler import RevenueReconciler
from meter_service.services.session_service import SessionService
from meter_service.services.tenant_admin_service import TenantAdminService

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(":memory:")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_settings() -> Settings:
    return Settings(database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def service_settings() -> ServiceSettings:
    return ServiceSettings(sweep_interval_seconds=0.01, max_transition_attempts=3)


@pytest.fixture
def tariff_cache() -> TariffCache:
    return TariffCache(ttl_seconds=60)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock, engine_settings: Settings
) -> RevenueReconciler:
    return RevenueReconciler(session_factory, DatabaseLedger(), clock=clock, cost_quantum=engine_settings.cost_quantum)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    engine_settings: Settings,
    service_settings: ServiceSettings,
    tariff_cache: TariffCache,
    reconciler: RevenueReconciler,
    clock: FakeClock,
) -> SessionService:
    return SessionService(
        session_factory,
        settings=engine_settings,
        service_settings=service_settings,
        tariff_cache=tariff_cache,
        reconciler=reconciler,
        clock=clock,
    )


@pytest.fixture
def admin(session_factory: async_sessionmaker[AsyncSession], tariff_cache: TariffCache) -> TenantAdminService:
    return TenantAdminService(session_factory, tariff_cache=tariff_cache)


@pytest.fixture
def seed(admin: TenantAdminService) -> Callable[..., Awaitable[None]]:
    """Return a coroutine that authorizes a tenant and registers its tariffs."""

    async def _seed(
        tenant_id: str = "acme",
        *,
        resources: dict[str, str] | None = None,
        max_concurrent_sessions: int = 10,
        max_session_duration_seconds: int | None = None,
        approval_threshold_cost: Decimal | None = None,
    ) -> None:
        # resources maps resource id -> rate per minute
        await admin.set_policy(
            tenant_id,
            is_authorized=True,
            authorized_by="tests",
            max_concurrent_sessions=max_concurrent_sessions,
            max_session_duration_seconds=max_session_duration_seconds,
            approval_threshold_cost=approval_threshold_cost,
        )
        for resource_id, rate in (resources or {"car-1": "2.00"}).items():
            await admin.set_tariff(tenant_id, resource_id, rate_per_minute=Decimal(rate))

    return _seed
