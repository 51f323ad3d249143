"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on the ``get_session`` context manager).

Rows are converted to the pydantic domain models on the way out so that
service code never handles ORM instances directly.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

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
)
from meter_engine.state.database import dialect_name
from meter_engine.state.tables import (
    LedgerEntryTable,
    MeteringSessionTable,
    SessionActionTable,
    TariffResourceTable,
    TenantMeteringPolicyTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 500

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]
_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent."""
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, _MAX_PAGE_SIZE)), max(offset, 0)


def _select(table: Any) -> Any:
    # Core UPDATEs bypass the identity map, so loaded rows must be refreshed.
    return select(table).execution_options(populate_existing=True)


# ---------------------------------------------------------------------------
# Row <-> model conversion
# ---------------------------------------------------------------------------


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _intervals_to_json(intervals: list[PauseInterval]) -> list[dict[str, Any]]:
    return [
        {
            "paused_at": interval.paused_at.astimezone(UTC).isoformat(),
            "resumed_at": interval.resumed_at.astimezone(UTC).isoformat() if interval.resumed_at else None,
        }
        for interval in intervals
    ]


def _intervals_from_json(raw: list[dict[str, Any]] | None) -> list[PauseInterval]:
    intervals: list[PauseInterval] = []
    for item in raw or []:
        paused_at = _parse_ts(item["paused_at"])
        assert paused_at is not None  # noqa: S101
        intervals.append(PauseInterval(paused_at=paused_at, resumed_at=_parse_ts(item.get("resumed_at"))))
    return intervals


def _frozen_cost(value: Any, quantum: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    # Numeric columns pad to their own scale; restore the scale the cost was frozen at.
    amount = Decimal(value)
    return amount.quantize(quantum) if quantum is not None else amount


def _session_from_row(row: MeteringSessionTable, cost_quantum: Decimal | None = None) -> MeteredSession:
    return MeteredSession(
        session_id=row.session_id,
        tenant_id=row.tenant_id,
        resource_id=row.resource_id,
        subject_id=row.subject_id,
        rate_per_minute=Decimal(row.rate_per_minute),
        mode=SessionMode(row.mode),
        planned_duration_seconds=row.planned_duration_seconds,
        started_at=row.started_at,
        pause_intervals=_intervals_from_json(row.pause_intervals_json),
        stopped_at=row.stopped_at,
        status=SessionStatus(row.status),
        final_cost=_frozen_cost(row.final_cost, cost_quantum),
        version=row.version,
        expires_at=row.expires_at,
        exported=row.exported,
        exported_at=row.exported_at,
        notes=row.notes,
    )


def _mutable_values(session: MeteredSession) -> dict[str, Any]:
    """Columns a lifecycle transition may change."""
    return {
        "pause_intervals_json": _intervals_to_json(session.pause_intervals),
        "stopped_at": session.stopped_at,
        "status": session.status.value,
        "final_cost": session.final_cost,
        "version": session.version,
        "expires_at": session.expires_at,
        "updated_at": datetime.now(UTC),
    }


def _policy_from_row(row: TenantMeteringPolicyTable) -> TenantMeteringPolicy:
    return TenantMeteringPolicy(
        tenant_id=row.tenant_id,
        is_authorized=row.is_authorized,
        max_concurrent_sessions=row.max_concurrent_sessions,
        max_session_duration_seconds=row.max_session_duration_seconds,
        approval_threshold_cost=(
            Decimal(row.approval_threshold_cost) if row.approval_threshold_cost is not None else None
        ),
        total_sessions_completed=row.total_sessions_completed,
        total_revenue=Decimal(row.total_revenue or 0),
        last_used_at=row.last_used_at,
        authorized_by=row.authorized_by,
        authorized_at=row.authorized_at,
        notes=row.notes,
    )


def _tariff_from_row(row: TariffResourceTable) -> TariffResource:
    return TariffResource(
        tenant_id=row.tenant_id,
        resource_id=row.resource_id,
        name=row.name,
        rate_per_minute=Decimal(row.rate_per_minute),
        is_active=row.is_active,
        total_sessions=row.total_sessions,
        total_active_seconds=row.total_active_seconds,
        total_revenue=Decimal(row.total_revenue or 0),
        last_used_at=row.last_used_at,
    )


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class SessionRepository:
    """Session store with per-record optimistic concurrency.

    Sessions are addressed by their globally unique id; listing methods are
    tenant scoped.
    """

    def __init__(self, session: AsyncSession, cost_quantum: Decimal | None = None) -> None:
        self._session = session
        self._cost_quantum = cost_quantum

    def _to_model(self, row: MeteringSessionTable) -> MeteredSession:
        return _session_from_row(row, self._cost_quantum)

    async def insert(self, metered: MeteredSession) -> None:
        """Persist a freshly started session."""
        row = MeteringSessionTable(
            session_id=metered.session_id,
            tenant_id=metered.tenant_id,
            resource_id=metered.resource_id,
            subject_id=metered.subject_id,
            rate_per_minute=metered.rate_per_minute,
            mode=metered.mode.value,
            planned_duration_seconds=metered.planned_duration_seconds,
            started_at=metered.started_at,
            pause_intervals_json=_intervals_to_json(metered.pause_intervals),
            stopped_at=metered.stopped_at,
            status=metered.status.value,
            final_cost=metered.final_cost,
            version=metered.version,
            expires_at=metered.expires_at,
            exported=metered.exported,
            notes=metered.notes,
        )
        self._session.add(row)
        await self._session.flush()

    async def get(self, session_id: str) -> MeteredSession | None:
        """Fetch a session by id.  Returns ``None`` if it does not exist."""
        stmt = _select(MeteringSessionTable).where(MeteringSessionTable.session_id == session_id)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_model(row) if row is not None else None

    async def compare_and_swap(self, updated: MeteredSession, expected_version: int) -> bool:
        """Write *updated* only if the stored version still equals *expected_version*.

        Returns ``True`` when this writer won; ``False`` means another writer
        committed first and the caller must reload and re-evaluate.
        """
        stmt = (
            update(MeteringSessionTable)
            .where(
                MeteringSessionTable.session_id == updated.session_id,
                MeteringSessionTable.version == expected_version,
            )
            .values(**_mutable_values(updated))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def count_active(self, tenant_id: str) -> int:
        """Number of ``running`` or ``paused`` sessions for *tenant_id*."""
        stmt = select(func.count()).where(
            MeteringSessionTable.tenant_id == tenant_id,
            MeteringSessionTable.status.in_(_ACTIVE_VALUES),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def find_active_for_resource(self, tenant_id: str, resource_id: str) -> MeteredSession | None:
        """Return the live session on *resource_id*, if any."""
        stmt = (
            _select(MeteringSessionTable)
            .where(
                MeteringSessionTable.tenant_id == tenant_id,
                MeteringSessionTable.resource_id == resource_id,
                MeteringSessionTable.status.in_(_ACTIVE_VALUES),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.scalars().first()
        return self._to_model(row) if row is not None else None

    async def list_active(self, tenant_id: str, subject_id: str | None = None) -> list[MeteredSession]:
        """Live sessions for a tenant, oldest first."""
        stmt = _select(MeteringSessionTable).where(
            MeteringSessionTable.tenant_id == tenant_id,
            MeteringSessionTable.status.in_(_ACTIVE_VALUES),
        )
        if subject_id:
            stmt = stmt.where(MeteringSessionTable.subject_id == subject_id)
        stmt = stmt.order_by(MeteringSessionTable.started_at)
        result = await self._session.execute(stmt)
        return [self._to_model(row) for row in result.scalars().all()]

    async def list_history(
        self,
        tenant_id: str,
        *,
        status: SessionStatus | None = None,
        resource_id: str | None = None,
        subject_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[MeteredSession], int]:
        """Terminal sessions for a tenant, newest first, with the total count.

        Parameters
        ----------
        status:
            Restrict to ``stopped`` or ``expired``.
        resource_id, subject_id:
            Optional equality filters.
        limit:
            Page size (capped at ``_MAX_PAGE_SIZE``).
        offset:
            Rows to skip.
        """
        limit, offset = _clamp_page(limit, offset)
        statuses = [status.value] if status is not None and status.is_terminal else _TERMINAL_VALUES
        filters = [
            MeteringSessionTable.tenant_id == tenant_id,
            MeteringSessionTable.status.in_(statuses),
        ]
        if resource_id:
            filters.append(MeteringSessionTable.resource_id == resource_id)
        if subject_id:
            filters.append(MeteringSessionTable.subject_id == subject_id)

        count_result = await self._session.execute(select(func.count()).where(*filters))
        total = int(count_result.scalar_one() or 0)

        stmt = (
            _select(MeteringSessionTable)
            .where(*filters)
            .order_by(MeteringSessionTable.stopped_at.desc(), MeteringSessionTable.session_id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [self._to_model(row) for row in result.scalars().all()], total

    async def list_due_for_expiry(
        self,
        now: datetime,
        *,
        tenant_id: str | None = None,
        limit: int = 500,
    ) -> list[MeteredSession]:
        """Live countdown sessions whose persisted deadline is at or before *now*."""
        stmt = _select(MeteringSessionTable).where(
            MeteringSessionTable.mode == SessionMode.COUNTDOWN.value,
            MeteringSessionTable.status.in_(_ACTIVE_VALUES),
            MeteringSessionTable.expires_at.is_not(None),
            MeteringSessionTable.expires_at <= now,
        )
        if tenant_id is not None:
            stmt = stmt.where(MeteringSessionTable.tenant_id == tenant_id)
        stmt = stmt.order_by(MeteringSessionTable.expires_at).limit(max(1, limit))
        result = await self._session.execute(stmt)
        return [self._to_model(row) for row in result.scalars().all()]

    async def list_unexported(self, *, tenant_id: str | None = None, limit: int = 500) -> list[MeteredSession]:
        """Terminal sessions whose billing record has not been reconciled yet."""
        stmt = _select(MeteringSessionTable).where(
            MeteringSessionTable.status.in_(_TERMINAL_VALUES),
            MeteringSessionTable.exported.is_(False),
        )
        if tenant_id is not None:
            stmt = stmt.where(MeteringSessionTable.tenant_id == tenant_id)
        stmt = stmt.order_by(MeteringSessionTable.stopped_at).limit(max(1, limit))
        result = await self._session.execute(stmt)
        return [self._to_model(row) for row in result.scalars().all()]

    async def mark_exported(self, session_id: str, at: datetime) -> bool:
        """Flip ``exported`` from false to true.  Returns ``False`` if already set."""
        stmt = (
            update(MeteringSessionTable)
            .where(
                MeteringSessionTable.session_id == session_id,
                MeteringSessionTable.status.in_(_TERMINAL_VALUES),
                MeteringSessionTable.exported.is_(False),
            )
            .values(exported=True, exported_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def record_action(
        self,
        metered: MeteredSession,
        action: SessionAction,
        occurred_at: datetime,
        actor: str = "system",
    ) -> None:
        """Append an entry to the session's action history."""
        self._session.add(
            SessionActionTable(
                session_id=metered.session_id,
                tenant_id=metered.tenant_id,
                action=action.value,
                actor=actor,
                occurred_at=occurred_at,
            )
        )
        await self._session.flush()

    async def list_actions(self, session_id: str) -> list[SessionActionRecord]:
        """Action history for a session, in the order the actions happened."""
        stmt = (
            _select(SessionActionTable)
            .where(SessionActionTable.session_id == session_id)
            .order_by(SessionActionTable.occurred_at, SessionActionTable.id)
        )
        result = await self._session.execute(stmt)
        return [
            SessionActionRecord(
                session_id=row.session_id,
                action=SessionAction(row.action),
                occurred_at=row.occurred_at,
                actor=row.actor,
            )
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# TenantPolicyRepository
# ---------------------------------------------------------------------------


class TenantPolicyRepository:
    """CRUD operations for the ``tenant_metering_policies`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> TenantMeteringPolicy | None:
        """Fetch the policy for this tenant.  Returns None if no row exists."""
        stmt = _select(TenantMeteringPolicyTable).where(
            TenantMeteringPolicyTable.tenant_id == self._tenant_id,
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _policy_from_row(row) if row is not None else None

    async def upsert(
        self,
        *,
        is_authorized: bool,
        authorized_by: str = "system",
        max_concurrent_sessions: int | None = None,
        max_session_duration_seconds: int | None = ...,  # type: ignore[assignment]
        approval_threshold_cost: Decimal | None = ...,  # type: ignore[assignment]
        notes: str | None = None,
    ) -> TenantMeteringPolicy:
        """Create or update the tenant's authorization and quotas.

        ``max_session_duration_seconds`` and ``approval_threshold_cost`` use
        the sentinel ``...`` to distinguish "not provided" (leave unchanged)
        from an explicit ``None`` (unlimited / no threshold).  Running totals
        are never touched here.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "is_authorized": is_authorized,
            "authorized_by": authorized_by if is_authorized else None,
            "authorized_at": now if is_authorized else None,
            "updated_at": now,
        }
        update_cols = ["is_authorized", "authorized_by", "authorized_at", "updated_at"]
        if max_concurrent_sessions is not None:
            values["max_concurrent_sessions"] = max_concurrent_sessions
            update_cols.append("max_concurrent_sessions")
        if max_session_duration_seconds is not ...:
            values["max_session_duration_seconds"] = max_session_duration_seconds
            update_cols.append("max_session_duration_seconds")
        if approval_threshold_cost is not ...:
            values["approval_threshold_cost"] = approval_threshold_cost
            update_cols.append("approval_threshold_cost")
        if notes is not None:
            values["notes"] = notes
            update_cols.append("notes")

        await _dialect_upsert(
            self._session,
            TenantMeteringPolicyTable,
            values=values,
            index_elements=["tenant_id"],
            update_columns=update_cols,
        )
        await self._session.flush()
        return await self.get()  # type: ignore[return-value]

    async def record_completion(self, revenue: Decimal, at: datetime) -> bool:
        """Increment completed-session and revenue totals atomically.

        Returns ``False`` when the tenant has no policy row.
        """
        stmt = (
            update(TenantMeteringPolicyTable)
            .where(TenantMeteringPolicyTable.tenant_id == self._tenant_id)
            .values(
                total_sessions_completed=TenantMeteringPolicyTable.total_sessions_completed + 1,
                total_revenue=TenantMeteringPolicyTable.total_revenue + revenue,
                last_used_at=at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# TariffRepository
# ---------------------------------------------------------------------------


class TariffRepository:
    """Read/write access to ``tariff_resources`` for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, resource_id: str) -> TariffResource | None:
        stmt = _select(TariffResourceTable).where(
            TariffResourceTable.tenant_id == self._tenant_id,
            TariffResourceTable.resource_id == resource_id,
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _tariff_from_row(row) if row is not None else None

    async def list_all(self, *, include_inactive: bool = False) -> list[TariffResource]:
        stmt = _select(TariffResourceTable).where(TariffResourceTable.tenant_id == self._tenant_id)
        if not include_inactive:
            stmt = stmt.where(TariffResourceTable.is_active.is_(True))
        stmt = stmt.order_by(TariffResourceTable.resource_id)
        result = await self._session.execute(stmt)
        return [_tariff_from_row(row) for row in result.scalars().all()]

    async def upsert(
        self,
        resource_id: str,
        *,
        rate_per_minute: Decimal,
        name: str = "",
        is_active: bool = True,
    ) -> TariffResource:
        """Create or update a resource's tariff.  Usage statistics are preserved."""
        values: dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "resource_id": resource_id,
            "name": name,
            "rate_per_minute": rate_per_minute,
            "is_active": is_active,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            TariffResourceTable,
            values=values,
            index_elements=["tenant_id", "resource_id"],
            update_columns=["name", "rate_per_minute", "is_active", "updated_at"],
        )
        await self._session.flush()
        return await self.get(resource_id)  # type: ignore[return-value]

    async def record_usage(
        self,
        resource_id: str,
        *,
        active_seconds: int,
        revenue: Decimal,
        at: datetime,
    ) -> bool:
        """Add one completed session to the resource's usage statistics."""
        stmt = (
            update(TariffResourceTable)
            .where(
                TariffResourceTable.tenant_id == self._tenant_id,
                TariffResourceTable.resource_id == resource_id,
            )
            .values(
                total_sessions=TariffResourceTable.total_sessions + 1,
                total_active_seconds=TariffResourceTable.total_active_seconds + active_seconds,
                total_revenue=TariffResourceTable.total_revenue + revenue,
                last_used_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class LedgerRepository:
    """Append-only access to ``ledger_entries``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, record: BillingRecord) -> bool:
        """Insert *record*; returns ``False`` if the session was already billed."""
        result = await _dialect_insert_nothing(
            self._session,
            LedgerEntryTable,
            values={
                "record_id": record.record_id,
                "session_id": record.session_id,
                "tenant_id": record.tenant_id,
                "resource_id": record.resource_id,
                "subject_id": record.subject_id,
                "status": record.status.value,
                "active_seconds": record.active_seconds,
                "rate_per_minute": record.rate_per_minute,
                "final_cost": record.final_cost,
                "started_at": record.started_at,
                "stopped_at": record.stopped_at,
                "recorded_at": record.recorded_at,
            },
            index_elements=["session_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_for_session(self, session_id: str) -> BillingRecord | None:
        stmt = _select(LedgerEntryTable).where(LedgerEntryTable.session_id == session_id)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return BillingRecord(
            record_id=row.record_id,
            session_id=row.session_id,
            tenant_id=row.tenant_id,
            resource_id=row.resource_id,
            subject_id=row.subject_id,
            status=SessionStatus(row.status),
            active_seconds=row.active_seconds,
            rate_per_minute=Decimal(row.rate_per_minute),
            final_cost=Decimal(row.final_cost),
            started_at=row.started_at,
            stopped_at=row.stopped_at,
            recorded_at=row.recorded_at,
        )

    async def total_for_tenant(self, tenant_id: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(LedgerEntryTable.final_cost), 0)).where(
            LedgerEntryTable.tenant_id == tenant_id
        )
        result = await self._session.execute(stmt)
        return Decimal(result.scalar_one() or 0)
