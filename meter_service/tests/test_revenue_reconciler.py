"""Tests for RevenueReconciler exactly-once export."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from meter_engine import lifecycle
from meter_engine.errors import NotFound, TransientStoreError
from meter_engine.models.session import SessionMode, SessionStatus
from meter_engine.state.repository import LedgerRepository, SessionRepository
from sqlalchemy.exc import OperationalError

from meter_service.ledger import FileLedger
from meter_service.services.revenue_reconciler import RevenueReconciler, build_billing_record


async def _insert_terminal(session_factory, clock, *, resource_id: str = "car-1", seconds: int = 630) -> str:
    """Write a stopped session directly, bypassing the service hook."""
    started = lifecycle.start(
        tenant_id="acme",
        resource_id=resource_id,
        subject_id="alice",
        rate_per_minute=Decimal("2.00"),
        mode=SessionMode.OPEN_ENDED,
        at=clock.now,
    )
    stopped = lifecycle.stop(started, clock.now + timedelta(seconds=seconds)).session
    async with session_factory() as db:
        repo = SessionRepository(db)
        await repo.insert(started)
        assert await repo.compare_and_swap(stopped, started.version)
        await db.commit()
    return started.session_id


# ---------------------------------------------------------------------------
# build_billing_record
# ---------------------------------------------------------------------------


class TestBuildBillingRecord:
    def test_record_from_stopped_session(self, clock) -> None:
        started = lifecycle.start(
            tenant_id="acme",
            resource_id="car-1",
            subject_id="alice",
            rate_per_minute=Decimal("2.00"),
            mode=SessionMode.OPEN_ENDED,
            at=clock.now,
        )
        paused = lifecycle.pause(started, clock.now + timedelta(seconds=30)).session
        stopped = lifecycle.stop(paused, clock.now + timedelta(seconds=90)).session

        record = build_billing_record(stopped, clock.now)
        assert record.session_id == stopped.session_id
        assert record.active_seconds == 30
        assert record.final_cost == Decimal("1.00")
        assert record.status is SessionStatus.STOPPED

    def test_live_session_rejected(self, clock) -> None:
        started = lifecycle.start(
            tenant_id="acme",
            resource_id="car-1",
            subject_id="alice",
            rate_per_minute=Decimal("2.00"),
            mode=SessionMode.OPEN_ENDED,
            at=clock.now,
        )
        with pytest.raises(ValueError):
            build_billing_record(started, clock.now)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    """One ledger record and one totals increment per session."""

    @pytest.mark.asyncio
    async def test_exports_once(self, session_factory, reconciler, seed, admin, clock) -> None:
        await seed()
        sid = await _insert_terminal(session_factory, clock)

        record = await reconciler.reconcile(sid)
        assert record is not None
        assert record.final_cost == Decimal("21.00")
        assert await reconciler.reconcile(sid) is None

        policy = await admin.get_policy("acme")
        assert policy.total_sessions_completed == 1
        assert policy.total_revenue == Decimal("21.00")
        assert policy.last_used_at == clock.now + timedelta(seconds=630)

        async with session_factory() as db:
            assert await LedgerRepository(db).total_for_tenant("acme") == Decimal("21.00")
            assert (await SessionRepository(db).get(sid)).exported is True

    @pytest.mark.asyncio
    async def test_live_session_is_skipped(self, service, reconciler, seed) -> None:
        await seed()
        sid = (await service.start_session("acme", "car-1", "alice")).session_id
        assert await reconciler.reconcile(sid) is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, reconciler) -> None:
        with pytest.raises(NotFound):
            await reconciler.reconcile("ses-missing")

    @pytest.mark.asyncio
    async def test_missing_policy_still_exports(self, session_factory, reconciler, clock) -> None:
        sid = await _insert_terminal(session_factory, clock)
        record = await reconciler.reconcile(sid)
        assert record is not None

    @pytest.mark.asyncio
    async def test_ledger_failure_rolls_back(self, session_factory, seed, admin, clock) -> None:
        await seed()
        sid = await _insert_terminal(session_factory, clock)
        ledger = MagicMock()
        ledger.append = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
        reconciler = RevenueReconciler(session_factory, ledger, clock=clock)

        with pytest.raises(TransientStoreError):
            await reconciler.reconcile(sid)

        async with session_factory() as db:
            assert (await SessionRepository(db).get(sid)).exported is False
        assert (await admin.get_policy("acme")).total_sessions_completed == 0

    @pytest.mark.asyncio
    async def test_file_ledger_sink(self, session_factory, seed, clock, tmp_path) -> None:
        await seed()
        sid = await _insert_terminal(session_factory, clock)
        ledger = FileLedger(tmp_path / "ledger.jsonl")
        reconciler = RevenueReconciler(session_factory, ledger, clock=clock)

        await reconciler.reconcile(sid)
        records = ledger.read_all()
        assert [r.session_id for r in records] == [sid]
        assert records[0].final_cost == Decimal("21.00")


# ---------------------------------------------------------------------------
# reconcile_pending
# ---------------------------------------------------------------------------


class TestReconcilePending:
    @pytest.mark.asyncio
    async def test_exports_every_pending_session(self, session_factory, reconciler, seed, admin, clock) -> None:
        await seed(resources={"car-1": "2.00", "car-2": "2.00"})
        await _insert_terminal(session_factory, clock, resource_id="car-1", seconds=60)
        await _insert_terminal(session_factory, clock, resource_id="car-2", seconds=120)

        assert await reconciler.reconcile_pending() == 2
        assert await reconciler.reconcile_pending() == 0
        policy = await admin.get_policy("acme")
        assert policy.total_revenue == Decimal("6.00")

    @pytest.mark.asyncio
    async def test_failures_are_left_for_next_cycle(self, session_factory, seed, clock) -> None:
        await seed()
        await _insert_terminal(session_factory, clock)
        ledger = MagicMock()
        ledger.append = AsyncMock(side_effect=OSError("ledger unavailable"))
        failing = RevenueReconciler(session_factory, ledger, clock=clock)

        assert await failing.reconcile_pending() == 0
        healthy = RevenueReconciler(session_factory, clock=clock)
        assert await healthy.reconcile_pending() == 1

    @pytest.mark.asyncio
    async def test_tenant_filter(self, session_factory, reconciler, seed, clock) -> None:
        await seed()
        await _insert_terminal(session_factory, clock)
        assert await reconciler.reconcile_pending(tenant_id="globex") == 0
        assert await reconciler.reconcile_pending(tenant_id="acme") == 1
