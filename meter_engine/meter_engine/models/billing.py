"""Finalized billing records emitted to the revenue ledger."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from meter_engine.models.session import SessionStatus


class BillingRecord(BaseModel):
    """One finalized session cost, appended to the ledger exactly once.

    Attributes
    ----------
    record_id:
        Unique identifier for this ledger entry.
    session_id:
        The terminated session; unique across the ledger.
    status:
        ``stopped`` or ``expired``.
    active_seconds:
        Billable active time, floored to whole seconds for display.
    final_cost:
        The frozen, rounded session cost.
    """

    record_id: str = Field(default_factory=lambda: f"led-{uuid.uuid4().hex[:12]}")
    session_id: str
    tenant_id: str
    resource_id: str
    subject_id: str
    status: SessionStatus
    active_seconds: int = Field(..., ge=0)
    rate_per_minute: Decimal
    final_cost: Decimal
    started_at: datetime
    stopped_at: datetime
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
