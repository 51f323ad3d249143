"""Unit tests for meter_engine.state.repository.

These tests use an in-memory SQLite database via aiosqlite so they can run
without a PostgreSQL instance.

Covers:
- Session round-trips, version compare-and-swap and listing queries
- Export bookkeeping and action history
- Tenant policy upserts and atomic total increments
- Tariff upserts and usage statistics
- Ledger append de-duplication
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from meter_engine import lifecycle
from meter_engine.models.billing import BillingRecord
from meter_engine.models.session import MeteredSession, SessionAction, SessionMode, SessionStatus
from meter_engine.state.repository import (
    LedgerRepository,
    SessionRepository,
    TariffRepository,
    TenantPolicyRepository,
)
from meter_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db() -> AsyncIterator[AsyncSession]:
    """Yield a session bound to a fresh in-memory database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


def _new_session(
    *,
    tenant_id: str = "acme",
    resource_id: str = "car-1",
    subject_id: str = "alice",
    mode: SessionMode = SessionMode.OPEN_ENDED,
    planned: int | None = None,
    at: datetime = T0,
) -> MeteredSession:
    return lifecycle.start(
        tenant_id=tenant_id,
        resource_id=resource_id,
        subject_id=subject_id,
        rate_per_minute=Decimal("2.00"),
        mode=mode,
        at=at,
        planned_duration_seconds=planned,
    )


def _record(session: MeteredSession) -> BillingRecord:
    assert session.stopped_at is not None and session.final_cost is not None
    return BillingRecord(
        session_id=session.session_id,
        tenant_id=session.tenant_id,
        resource_id=session.resource_id,
        subject_id=session.subject_id,
        status=session.status,
        active_seconds=60,
        rate_per_minute=session.rate_per_minute,
        final_cost=session.final_cost,
        started_at=session.started_at,
        stopped_at=session.stopped_at,
    )


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class TestSessionRoundTrip:
    """Sessions survive a write/read cycle intact."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session(mode=SessionMode.COUNTDOWN, planned=300)
        await repo.insert(session)

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert loaded.session_id == session.session_id
        assert loaded.mode is SessionMode.COUNTDOWN
        assert loaded.planned_duration_seconds == 300
        assert loaded.rate_per_minute == Decimal("2.00")
        assert loaded.started_at == T0
        assert loaded.expires_at == _at(300)
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, db: AsyncSession) -> None:
        assert await SessionRepository(db).get("ses-missing") is None

    @pytest.mark.asyncio
    async def test_pause_intervals_round_trip_as_utc(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session()
        await repo.insert(session)
        paused = lifecycle.pause(session, _at(60)).session
        resumed = lifecycle.resume(paused, _at(90)).session
        assert await repo.compare_and_swap(paused, session.version)
        assert await repo.compare_and_swap(resumed, paused.version)

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert loaded.status is SessionStatus.RUNNING
        assert len(loaded.pause_intervals) == 1
        assert loaded.pause_intervals[0].paused_at == _at(60)
        assert loaded.pause_intervals[0].resumed_at == _at(90)
        assert loaded.pause_intervals[0].paused_at.tzinfo is not None


class TestCompareAndSwap:
    """Only the writer holding the current version may commit."""

    @pytest.mark.asyncio
    async def test_matching_version_wins(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session()
        await repo.insert(session)

        stopped = lifecycle.stop(session, _at(630)).session
        assert await repo.compare_and_swap(stopped, expected_version=1) is True

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert loaded.status is SessionStatus.STOPPED
        assert loaded.final_cost == Decimal("21.00")
        assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_stale_version_loses(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session()
        await repo.insert(session)

        paused = lifecycle.pause(session, _at(10)).session
        assert await repo.compare_and_swap(paused, expected_version=1)

        # A second writer still holding version 1.
        stale_stop = lifecycle.stop(session, _at(20)).session
        assert await repo.compare_and_swap(stale_stop, expected_version=1) is False

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert loaded.status is SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_final_cost_read_back_at_frozen_scale(self, db: AsyncSession) -> None:
        repo = SessionRepository(db, cost_quantum=Decimal("0.01"))
        session = _new_session()
        await repo.insert(session)
        stopped = lifecycle.stop(session, _at(300)).session
        assert await repo.compare_and_swap(stopped, expected_version=1)

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert str(loaded.final_cost) == str(stopped.final_cost) == "10.00"


class TestSessionQueries:
    """Listing and counting queries."""

    @pytest.mark.asyncio
    async def test_count_active_and_resource_lookup(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        first = _new_session(resource_id="car-1")
        second = _new_session(resource_id="car-2")
        other_tenant = _new_session(tenant_id="globex", resource_id="car-1")
        for s in (first, second, other_tenant):
            await repo.insert(s)
        assert await repo.compare_and_swap(lifecycle.stop(second, _at(60)).session, 1)

        assert await repo.count_active("acme") == 1
        busy = await repo.find_active_for_resource("acme", "car-1")
        assert busy is not None and busy.session_id == first.session_id
        assert await repo.find_active_for_resource("acme", "car-2") is None

    @pytest.mark.asyncio
    async def test_list_active_filters_by_subject(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        await repo.insert(_new_session(resource_id="car-1", subject_id="alice"))
        await repo.insert(_new_session(resource_id="car-2", subject_id="bob", at=_at(5)))

        assert len(await repo.list_active("acme")) == 2
        bobs = await repo.list_active("acme", subject_id="bob")
        assert [s.subject_id for s in bobs] == ["bob"]

    @pytest.mark.asyncio
    async def test_list_history_paginates_newest_first(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        ids = []
        for i in range(3):
            s = _new_session(resource_id=f"car-{i}")
            await repo.insert(s)
            assert await repo.compare_and_swap(lifecycle.stop(s, _at(60 * (i + 1))).session, 1)
            ids.append(s.session_id)
        await repo.insert(_new_session(resource_id="car-live"))

        page, total = await repo.list_history("acme", limit=2, offset=0)
        assert total == 3
        assert [s.session_id for s in page] == [ids[2], ids[1]]

        rest, _ = await repo.list_history("acme", limit=2, offset=2)
        assert [s.session_id for s in rest] == [ids[0]]

        filtered, count = await repo.list_history("acme", resource_id="car-1")
        assert count == 1 and filtered[0].session_id == ids[1]

        expired_only, none = await repo.list_history("acme", status=SessionStatus.EXPIRED)
        assert expired_only == [] and none == 0

    @pytest.mark.asyncio
    async def test_list_due_for_expiry(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        due = _new_session(resource_id="car-1", mode=SessionMode.COUNTDOWN, planned=60)
        later = _new_session(resource_id="car-2", mode=SessionMode.COUNTDOWN, planned=600)
        open_ended = _new_session(resource_id="car-3")
        paused = _new_session(resource_id="car-4", mode=SessionMode.COUNTDOWN, planned=60)
        for s in (due, later, open_ended, paused):
            await repo.insert(s)
        assert await repo.compare_and_swap(lifecycle.pause(paused, _at(30)).session, 1)

        result = await repo.list_due_for_expiry(_at(120))
        assert [s.session_id for s in result] == [due.session_id]
        assert await repo.list_due_for_expiry(_at(120), tenant_id="globex") == []


class TestExportBookkeeping:
    """The exported flag flips exactly once."""

    @pytest.mark.asyncio
    async def test_mark_exported_only_once(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session()
        await repo.insert(session)
        assert await repo.mark_exported(session.session_id, _at(1)) is False  # still running

        assert await repo.compare_and_swap(lifecycle.stop(session, _at(60)).session, 1)
        assert [s.session_id for s in await repo.list_unexported()] == [session.session_id]

        assert await repo.mark_exported(session.session_id, _at(61)) is True
        assert await repo.mark_exported(session.session_id, _at(62)) is False
        assert await repo.list_unexported() == []

        loaded = await repo.get(session.session_id)
        assert loaded is not None
        assert loaded.exported is True
        assert loaded.exported_at == _at(61)

    @pytest.mark.asyncio
    async def test_action_history_in_order(self, db: AsyncSession) -> None:
        repo = SessionRepository(db)
        session = _new_session()
        await repo.insert(session)
        await repo.record_action(session, SessionAction.START, T0, "alice")
        await repo.record_action(session, SessionAction.PAUSE, _at(10))
        await repo.record_action(session, SessionAction.RESUME, _at(20))

        actions = await repo.list_actions(session.session_id)
        assert [a.action for a in actions] == [SessionAction.START, SessionAction.PAUSE, SessionAction.RESUME]
        assert actions[0].actor == "alice"
        assert actions[1].actor == "system"


# ---------------------------------------------------------------------------
# TenantPolicyRepository
# ---------------------------------------------------------------------------


class TestTenantPolicyRepository:
    """Policy upserts and total increments."""

    @pytest.mark.asyncio
    async def test_upsert_creates_with_defaults(self, db: AsyncSession) -> None:
        policy = await TenantPolicyRepository(db, "acme").upsert(is_authorized=True, authorized_by="ops")
        assert policy.is_authorized is True
        assert policy.max_concurrent_sessions == 10
        assert policy.max_session_duration_seconds is None
        assert policy.authorized_by == "ops"
        assert policy.total_sessions_completed == 0

    @pytest.mark.asyncio
    async def test_upsert_leaves_omitted_caps_unchanged(self, db: AsyncSession) -> None:
        repo = TenantPolicyRepository(db, "acme")
        await repo.upsert(
            is_authorized=True,
            max_concurrent_sessions=2,
            max_session_duration_seconds=3600,
            approval_threshold_cost=Decimal("50"),
        )
        policy = await repo.upsert(is_authorized=False)
        assert policy.is_authorized is False
        assert policy.max_concurrent_sessions == 2
        assert policy.max_session_duration_seconds == 3600
        assert policy.approval_threshold_cost == Decimal("50")

        cleared = await repo.upsert(is_authorized=True, max_session_duration_seconds=None)
        assert cleared.max_session_duration_seconds is None

    @pytest.mark.asyncio
    async def test_record_completion_increments_totals(self, db: AsyncSession) -> None:
        repo = TenantPolicyRepository(db, "acme")
        await repo.upsert(is_authorized=True)
        assert await repo.record_completion(Decimal("21.00"), _at(630))
        assert await repo.record_completion(Decimal("5.00"), _at(900))

        policy = await repo.get()
        assert policy is not None
        assert policy.total_sessions_completed == 2
        assert policy.total_revenue == Decimal("26.00")
        assert policy.last_used_at == _at(900)

        # Upserting the policy never resets totals.
        policy = await repo.upsert(is_authorized=True, max_concurrent_sessions=3)
        assert policy.total_sessions_completed == 2

    @pytest.mark.asyncio
    async def test_record_completion_without_policy(self, db: AsyncSession) -> None:
        assert await TenantPolicyRepository(db, "ghost").record_completion(Decimal("1"), T0) is False


# ---------------------------------------------------------------------------
# TariffRepository
# ---------------------------------------------------------------------------


class TestTariffRepository:
    """Tariff upserts and usage statistics."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, db: AsyncSession) -> None:
        repo = TariffRepository(db, "acme")
        tariff = await repo.upsert("car-1", rate_per_minute=Decimal("1.50"), name="Sedan")
        assert tariff.rate_per_minute == Decimal("1.50")
        assert tariff.name == "Sedan"
        assert tariff.is_active is True

        updated = await repo.upsert("car-1", rate_per_minute=Decimal("2.00"), name="Sedan", is_active=False)
        assert updated.rate_per_minute == Decimal("2.00")
        assert updated.is_active is False
        assert await TariffRepository(db, "globex").get("car-1") is None

    @pytest.mark.asyncio
    async def test_list_all_excludes_inactive_by_default(self, db: AsyncSession) -> None:
        repo = TariffRepository(db, "acme")
        await repo.upsert("car-1", rate_per_minute=Decimal("1"))
        await repo.upsert("car-2", rate_per_minute=Decimal("1"), is_active=False)
        assert [t.resource_id for t in await repo.list_all()] == ["car-1"]
        assert len(await repo.list_all(include_inactive=True)) == 2

    @pytest.mark.asyncio
    async def test_record_usage(self, db: AsyncSession) -> None:
        repo = TariffRepository(db, "acme")
        await repo.upsert("car-1", rate_per_minute=Decimal("2.00"))
        assert await repo.record_usage("car-1", active_seconds=630, revenue=Decimal("21.00"), at=_at(630))

        tariff = await repo.get("car-1")
        assert tariff is not None
        assert tariff.total_sessions == 1
        assert tariff.total_active_seconds == 630
        assert tariff.total_revenue == Decimal("21.00")
        assert tariff.last_used_at == _at(630)


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class TestLedgerRepository:
    """One ledger entry per session."""

    @pytest.mark.asyncio
    async def test_append_is_deduplicated_by_session(self, db: AsyncSession) -> None:
        sessions = SessionRepository(db)
        session = _new_session()
        await sessions.insert(session)
        stopped = lifecycle.stop(session, _at(60)).session

        ledger = LedgerRepository(db)
        assert await ledger.append(_record(stopped)) is True
        assert await ledger.append(_record(stopped)) is False

        stored = await ledger.get_for_session(session.session_id)
        assert stored is not None
        assert stored.final_cost == Decimal("2.00")
        assert stored.status is SessionStatus.STOPPED
        assert await ledger.total_for_tenant("acme") == Decimal("2.00")
