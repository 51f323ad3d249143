"""Tenant metering policy and tariff administration.

Writes the records the authorization gate and tariff lookups consume.
Running totals on policies and resources are owned by the revenue
reconciler and are never changed here.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from meter_engine.errors import NotFound, TransientStoreError
from meter_engine.models.policy import TariffResource, TenantMeteringPolicy
from meter_engine.state.repository import TariffRepository, TenantPolicyRepository
from meter_engine.tariff.cache import TariffCache
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_UNSET = ...


class TenantAdminService:
    """Manage tenant authorization, quotas and resource tariffs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tariff_cache: TariffCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._tariff_cache = tariff_cache

    async def set_policy(
        self,
        tenant_id: str,
        *,
        is_authorized: bool,
        authorized_by: str = "system",
        max_concurrent_sessions: int | None = None,
        max_session_duration_seconds: int | None = _UNSET,  # type: ignore[assignment]
        approval_threshold_cost: Decimal | None = _UNSET,  # type: ignore[assignment]
        notes: str | None = None,
    ) -> TenantMeteringPolicy:
        """Create or update a tenant's metering policy.

        Omitted optional caps are left unchanged; an explicit ``None``
        removes the cap.
        """
        async with self._session_factory() as db:
            try:
                policy = await TenantPolicyRepository(db, tenant_id).upsert(
                    is_authorized=is_authorized,
                    authorized_by=authorized_by,
                    max_concurrent_sessions=max_concurrent_sessions,
                    max_session_duration_seconds=max_session_duration_seconds,
                    approval_threshold_cost=approval_threshold_cost,
                    notes=notes,
                )
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise TransientStoreError(f"Could not save policy for tenant '{tenant_id}'.") from exc

        logger.info(
            "Metering policy saved: tenant=%s authorized=%s max_concurrent=%d by=%s",
            tenant_id,
            policy.is_authorized,
            policy.max_concurrent_sessions,
            authorized_by,
        )
        return policy

    async def get_policy(self, tenant_id: str) -> TenantMeteringPolicy:
        async with self._session_factory() as db:
            policy = await TenantPolicyRepository(db, tenant_id).get()
        if policy is None:
            raise NotFound(f"No metering policy for tenant '{tenant_id}'.")
        return policy

    async def set_tariff(
        self,
        tenant_id: str,
        resource_id: str,
        *,
        rate_per_minute: Decimal,
        name: str = "",
        is_active: bool = True,
    ) -> TariffResource:
        """Create or update a resource tariff and drop any cached copy.

        Sessions already started keep the rate they captured at start.
        """
        if rate_per_minute < 0:
            raise ValueError("rate_per_minute must not be negative")
        async with self._session_factory() as db:
            try:
                tariff = await TariffRepository(db, tenant_id).upsert(
                    resource_id,
                    rate_per_minute=rate_per_minute,
                    name=name,
                    is_active=is_active,
                )
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise TransientStoreError(f"Could not save tariff for resource '{resource_id}'.") from exc

        if self._tariff_cache is not None:
            self._tariff_cache.invalidate(tenant_id, resource_id)
        logger.info(
            "Tariff saved: tenant=%s resource=%s rate=%s active=%s",
            tenant_id,
            resource_id,
            rate_per_minute,
            is_active,
        )
        return tariff

    async def list_tariffs(self, tenant_id: str, *, include_inactive: bool = False) -> list[TariffResource]:
        async with self._session_factory() as db:
            return await TariffRepository(db, tenant_id).list_all(include_inactive=include_inactive)
