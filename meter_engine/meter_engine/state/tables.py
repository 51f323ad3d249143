"""SQLAlchemy 2.0 ORM table definitions for the metering state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite stores datetimes without an offset, so naive values read back
    are re-tagged as UTC; aware values are normalised to UTC before binding.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Tenant metering policy
# ---------------------------------------------------------------------------


class TenantMeteringPolicyTable(Base):
    """Per-tenant authorization, quotas and running revenue totals.

    One row per tenant.  Quota columns are written only by explicit
    authorization actions; the running totals only by the revenue
    reconciler.
    """

    __tablename__ = "tenant_metering_policies"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_authorized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_concurrent_sessions: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    max_session_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    approval_threshold_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True, default=None)
    total_sessions_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"), nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    authorized_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    authorized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("max_concurrent_sessions >= 0", name="ck_policies_max_concurrent"),
        Index("ix_policies_authorized", "is_authorized"),
    )


# ---------------------------------------------------------------------------
# Tariff resources
# ---------------------------------------------------------------------------


class TariffResourceTable(Base):
    """Meterable resources (vehicles, rooms, ...) with their per-minute rate.

    Also carries per-resource usage statistics maintained by the revenue
    reconciler.
    """

    __tablename__ = "tariff_resources"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    rate_per_minute: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    total_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_active_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"), nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "resource_id"),
        CheckConstraint("rate_per_minute >= 0", name="ck_tariff_rate_non_negative"),
        Index("ix_tariff_resources_tenant_active", "tenant_id", "is_active"),
    )


# ---------------------------------------------------------------------------
# Metering sessions
# ---------------------------------------------------------------------------


class MeteringSessionTable(Base):
    """Authoritative session records.

    ``version`` is the optimistic-concurrency counter: every mutation is an
    ``UPDATE ... WHERE version = :expected`` so only one writer per session
    can commit a given transition.  ``expires_at`` is the countdown deadline
    derived from the persisted timestamps while the session is running.
    """

    __tablename__ = "metering_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rate_per_minute: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    planned_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    pause_intervals_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)
    stopped_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    final_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    exported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exported_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running','paused','stopped','expired')",
            name="ck_sessions_status",
        ),
        CheckConstraint("mode IN ('open_ended','countdown')", name="ck_sessions_mode"),
        Index("ix_sessions_tenant_status", "tenant_id", "status"),
        Index("ix_sessions_resource_status", "tenant_id", "resource_id", "status"),
        Index("ix_sessions_status_expires", "status", "expires_at"),
        Index("ix_sessions_unexported", "status", "exported"),
    )


# ---------------------------------------------------------------------------
# Session action history
# ---------------------------------------------------------------------------


class SessionActionTable(Base):
    """Append-only history of lifecycle actions for each session."""

    __tablename__ = "session_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("metering_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False, default="system")
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "action IN ('start','pause','resume','stop','expire')",
            name="ck_session_actions_action",
        ),
        Index("ix_session_actions_session", "session_id", "occurred_at"),
    )


# ---------------------------------------------------------------------------
# Revenue ledger
# ---------------------------------------------------------------------------


class LedgerEntryTable(Base):
    """Finalized billing records; one row per terminated session."""

    __tablename__ = "ledger_entries"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    active_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_per_minute: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    final_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    stopped_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('stopped','expired')", name="ck_ledger_status"),
        Index("ix_ledger_tenant_recorded", "tenant_id", "recorded_at"),
    )
