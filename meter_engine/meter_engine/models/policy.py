"""Tenant metering policy and tariff resource models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class TenantMeteringPolicy(BaseModel):
    """Authorization and quota record for one tenant.

    Quota fields are consumed by the authorization gate; the running totals
    are written only by the revenue reconciler.
    """

    tenant_id: str = Field(..., min_length=1)
    is_authorized: bool = False
    max_concurrent_sessions: int = Field(default=10, ge=0)
    max_session_duration_seconds: int | None = Field(
        default=None,
        gt=0,
        description="Upper bound for countdown durations; None means unlimited.",
    )
    approval_threshold_cost: Decimal | None = Field(
        default=None,
        ge=0,
        description="Projected costs above this are flagged for external approval.",
    )
    total_sessions_completed: int = Field(default=0, ge=0)
    total_revenue: Decimal = Field(default=Decimal("0"))
    last_used_at: datetime | None = None
    authorized_by: str | None = None
    authorized_at: datetime | None = None
    notes: str | None = None


class TariffResource(BaseModel):
    """A meterable resource (e.g. a vehicle) with its per-minute rate."""

    tenant_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    name: str = ""
    rate_per_minute: Decimal = Field(..., ge=0)
    is_active: bool = True
    total_sessions: int = 0
    total_active_seconds: int = 0
    total_revenue: Decimal = Field(default=Decimal("0"))
    last_used_at: datetime | None = None
