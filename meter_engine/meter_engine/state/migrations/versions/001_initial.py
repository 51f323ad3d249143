"""Initial metering schema.

Creates ``tenant_metering_policies``, ``tariff_resources``,
``metering_sessions``, ``session_actions`` and ``ledger_entries``.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tenant_metering_policies",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("is_authorized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_session_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("approval_threshold_cost", sa.Numeric(14, 4), nullable=True),
        sa.Column("total_sessions_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_revenue", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("authorized_by", sa.String(256), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("max_concurrent_sessions >= 0", name="ck_policies_max_concurrent"),
    )
    op.create_index("ix_policies_authorized", "tenant_metering_policies", ["is_authorized"])

    op.create_table(
        "tariff_resources",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("rate_per_minute", sa.Numeric(14, 4), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_active_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_revenue", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("tenant_id", "resource_id"),
        sa.CheckConstraint("rate_per_minute >= 0", name="ck_tariff_rate_non_negative"),
    )
    op.create_index("ix_tariff_resources_tenant_active", "tariff_resources", ["tenant_id", "is_active"])

    op.create_table(
        "metering_sessions",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(128), nullable=False),
        sa.Column("rate_per_minute", sa.Numeric(14, 4), nullable=False),
        sa.Column("mode", sa.String(16), nullable=False),
        sa.Column("planned_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pause_intervals_json", _JSON, nullable=False),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("final_cost", sa.Numeric(14, 4), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exported", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('running','paused','stopped','expired')", name="ck_sessions_status"),
        sa.CheckConstraint("mode IN ('open_ended','countdown')", name="ck_sessions_mode"),
    )
    op.create_index("ix_sessions_tenant_status", "metering_sessions", ["tenant_id", "status"])
    op.create_index("ix_sessions_resource_status", "metering_sessions", ["tenant_id", "resource_id", "status"])
    op.create_index("ix_sessions_status_expires", "metering_sessions", ["status", "expires_at"])
    op.create_index("ix_sessions_unexported", "metering_sessions", ["status", "exported"])

    op.create_table(
        "session_actions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.String(64),
            sa.ForeignKey("metering_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False, server_default="system"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "action IN ('start','pause','resume','stop','expire')",
            name="ck_session_actions_action",
        ),
    )
    op.create_index("ix_session_actions_session", "session_actions", ["session_id", "occurred_at"])

    op.create_table(
        "ledger_entries",
        sa.Column("record_id", sa.String(64), primary_key=True),
        sa.Column("session_id", sa.String(64), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("active_seconds", sa.Integer(), nullable=False),
        sa.Column("rate_per_minute", sa.Numeric(14, 4), nullable=False),
        sa.Column("final_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('stopped','expired')", name="ck_ledger_status"),
    )
    op.create_index("ix_ledger_tenant_recorded", "ledger_entries", ["tenant_id", "recorded_at"])


def downgrade() -> None:
    op.drop_index("ix_ledger_tenant_recorded")
    op.drop_table("ledger_entries")
    op.drop_index("ix_session_actions_session")
    op.drop_table("session_actions")
    op.drop_index("ix_sessions_unexported")
    op.drop_index("ix_sessions_status_expires")
    op.drop_index("ix_sessions_resource_status")
    op.drop_index("ix_sessions_tenant_status")
    op.drop_table("metering_sessions")
    op.drop_index("ix_tariff_resources_tenant_active")
    op.drop_table("tariff_resources")
    op.drop_index("ix_policies_authorized")
    op.drop_table("tenant_metering_policies")
