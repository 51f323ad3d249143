"""Revenue reconciliation for terminated sessions.

Invoked by the winner of a terminal transition, after that transition has
committed.  In a single transaction the reconciler:

1. flips the session's ``exported`` flag from false to true (a conditional
   update, so a replay after a crash or a concurrent retry is a no-op);
2. appends a :class:`BillingRecord` to the configured ledger sink;
3. increments the tenant's completed-session count and revenue and sets
   ``last_used_at``;
4. adds the session to the resource's usage statistics.

If anything fails the transaction rolls back, ``exported`` stays false and
the expiration sweeper retries the session on its next cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from meter_engine.accrual.calculator import active_time
from meter_engine.errors import NotFound, TransientStoreError
from meter_engine.models.billing import BillingRecord
from meter_engine.models.session import MeteredSession
from meter_engine.state.repository import SessionRepository, TariffRepository, TenantPolicyRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_service.ledger import DatabaseLedger, LedgerSink

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_billing_record(session: MeteredSession, recorded_at: datetime) -> BillingRecord:
    """Derive the ledger entry for a terminal session."""
    if not session.is_terminal or session.stopped_at is None or session.final_cost is None:
        raise ValueError(f"Session {session.session_id} is not terminal; nothing to bill.")
    return BillingRecord(
        session_id=session.session_id,
        tenant_id=session.tenant_id,
        resource_id=session.resource_id,
        subject_id=session.subject_id,
        status=session.status,
        active_seconds=int(active_time(session, session.stopped_at).total_seconds()),
        rate_per_minute=session.rate_per_minute,
        final_cost=session.final_cost,
        started_at=session.started_at,
        stopped_at=session.stopped_at,
        recorded_at=recorded_at,
    )


class RevenueReconciler:
    """Exactly-once propagation of final costs into the ledger and totals.

    Parameters
    ----------
    session_factory:
        Factory for the reconciler's own database sessions.
    ledger:
        Sink receiving billing records.  Defaults to :class:`DatabaseLedger`.
    clock:
        Returns the current UTC time; injectable for tests.
    cost_quantum:
        Scale final costs were frozen at; billed amounts are read back at it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerSink | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        cost_quantum: Decimal | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger if ledger is not None else DatabaseLedger()
        self._clock = clock
        self._cost_quantum = cost_quantum

    async def reconcile(self, session_id: str) -> BillingRecord | None:
        """Export one terminal session.

        Returns the appended record, or ``None`` when the session is still
        live or was already exported.

        Raises
        ------
        NotFound
            If the session does not exist.
        TransientStoreError
            If the store or the ledger failed; nothing was committed.
        """
        async with self._session_factory() as db:
            try:
                record = await self._reconcile_in(db, session_id)
                if record is None:
                    await db.rollback()
                    return None
                await db.commit()
            except (SQLAlchemyError, OSError) as exc:
                await db.rollback()
                logger.error("Reconciliation failed for session %s: %s", session_id, exc, exc_info=True)
                raise TransientStoreError(f"Reconciliation of session {session_id} failed; will retry.") from exc
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "Reconciled session %s: tenant=%s resource=%s cost=%s",
            record.session_id,
            record.tenant_id,
            record.resource_id,
            record.final_cost,
            extra={"session": {"session_id": record.session_id, "final_cost": str(record.final_cost)}},
        )
        return record

    async def reconcile_pending(self, *, tenant_id: str | None = None, limit: int = 500) -> int:
        """Retry every terminal session whose ``exported`` flag is still false.

        Failures are logged and left for the next call.  Returns the number
        of sessions exported.
        """
        async with self._session_factory() as db:
            pending = await SessionRepository(db, self._cost_quantum).list_unexported(tenant_id=tenant_id, limit=limit)

        exported = 0
        for session in pending:
            try:
                if await self.reconcile(session.session_id) is not None:
                    exported += 1
            except (TransientStoreError, NotFound):
                logger.warning("Deferred reconciliation of session %s to the next cycle", session.session_id)
        if pending:
            logger.info("Reconciled %d/%d pending sessions", exported, len(pending))
        return exported

    async def _reconcile_in(self, db: AsyncSession, session_id: str) -> BillingRecord | None:
        sessions = SessionRepository(db, self._cost_quantum)
        session = await sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found.")
        if not session.is_terminal or session.exported:
            logger.debug("Session %s not eligible for reconciliation (status=%s)", session_id, session.status.value)
            return None

        now = self._clock()
        if not await sessions.mark_exported(session_id, now):
            logger.debug("Session %s already exported by a concurrent reconciler", session_id)
            return None

        record = build_billing_record(session, now)
        await self._ledger.append(db, record)

        revenue = session.final_cost or Decimal("0")
        last_used = session.stopped_at or now
        updated = await TenantPolicyRepository(db, session.tenant_id).record_completion(revenue, last_used)
        if not updated:
            logger.warning("No metering policy for tenant=%s; totals not updated", session.tenant_id)
        await TariffRepository(db, session.tenant_id).record_usage(
            session.resource_id,
            active_seconds=record.active_seconds,
            revenue=revenue,
            at=last_used,
        )
        return record
