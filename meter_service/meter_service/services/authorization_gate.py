"""Authorization gate for starting metered sessions.

Decides, without side effects, whether a tenant may open another session:

1. the tenant has a metering policy and ``is_authorized`` is set;
2. the number of ``running``/``paused`` sessions is below
   ``max_concurrent_sessions``;
3. a countdown duration is positive and within
   ``max_session_duration_seconds`` (``None`` meaning unlimited).

The approval threshold never blocks: a projected cost above it is only
flagged on the decision so the caller can route the start for approval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from meter_engine.accrual.calculator import cost
from meter_engine.errors import (
    AuthorizationDenied,
    InvalidDuration,
    MeteringError,
    QuotaExceeded,
)
from meter_engine.models.policy import TenantMeteringPolicy
from meter_engine.models.session import SessionMode
from meter_engine.state.database import acquire_advisory_lock
from meter_engine.state.repository import SessionRepository, TenantPolicyRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_DENIAL_ERRORS: dict[str, type[MeteringError]] = {
    AuthorizationDenied.code: AuthorizationDenied,
    QuotaExceeded.code: QuotaExceeded,
    InvalidDuration.code: InvalidDuration,
}


@dataclass(frozen=True)
class GateDecision:
    """Outcome of :meth:`AuthorizationGate.authorize_start`.

    ``code`` and ``reason`` are set only when ``allowed`` is ``False``.
    """

    allowed: bool
    code: str | None = None
    reason: str | None = None
    policy: TenantMeteringPolicy | None = None
    projected_cost: Decimal | None = None
    approval_required: bool = False

    def raise_if_denied(self) -> None:
        """Raise the error matching ``code`` for a denied decision."""
        if self.allowed:
            return
        error_cls = _DENIAL_ERRORS.get(self.code or "", AuthorizationDenied)
        raise error_cls(self.reason or "Session start denied.")


class AuthorizationGate:
    """Pre-start authorization and quota checks for one tenant.

    The gate runs inside the caller's transaction.  On PostgreSQL it takes a
    transaction-scoped advisory lock keyed on the tenant, so two concurrent
    starts cannot both pass the concurrency cap; the lock is released when
    the caller commits the new session.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._policy_repo = TenantPolicyRepository(session, tenant_id)
        self._session_repo = SessionRepository(session)

    async def authorize_start(
        self,
        mode: SessionMode,
        requested_duration_seconds: int | None = None,
        *,
        rate_per_minute: Decimal | None = None,
    ) -> GateDecision:
        """Check whether a new session may start.

        Parameters
        ----------
        mode:
            Requested session mode; the duration check applies to countdown
            sessions only.
        requested_duration_seconds:
            Planned duration for a countdown session.
        rate_per_minute:
            When known, used to compute ``projected_cost`` and
            ``approval_required`` for countdown sessions.

        Returns
        -------
        GateDecision
            ``allowed`` plus, on denial, a stable ``code`` and a reason.
        """
        await acquire_advisory_lock(self._session, f"meter_start_{self._tenant_id}")

        policy = await self._policy_repo.get()
        if policy is None or not policy.is_authorized:
            logger.warning("Start denied: tenant=%s is not authorized to meter sessions", self._tenant_id)
            return GateDecision(
                allowed=False,
                code=AuthorizationDenied.code,
                reason=f"Tenant '{self._tenant_id}' is not authorized to start metered sessions.",
                policy=policy,
            )

        active = await self._session_repo.count_active(self._tenant_id)
        if active >= policy.max_concurrent_sessions:
            logger.warning(
                "Quota exceeded: tenant=%s active_sessions=%d/%d",
                self._tenant_id,
                active,
                policy.max_concurrent_sessions,
            )
            return GateDecision(
                allowed=False,
                code=QuotaExceeded.code,
                reason=(
                    f"Concurrent session limit reached ({active}/{policy.max_concurrent_sessions}) "
                    f"for tenant '{self._tenant_id}'."
                ),
                policy=policy,
            )

        projected: Decimal | None = None
        if mode is SessionMode.COUNTDOWN:
            denial = self._check_duration(policy, requested_duration_seconds)
            if denial is not None:
                return denial
            if rate_per_minute is not None:
                projected = cost(requested_duration_seconds or 0, rate_per_minute)

        approval_required = (
            projected is not None
            and policy.approval_threshold_cost is not None
            and projected > policy.approval_threshold_cost
        )
        if approval_required:
            logger.info(
                "Projected cost %s exceeds approval threshold %s for tenant=%s",
                projected,
                policy.approval_threshold_cost,
                self._tenant_id,
            )

        return GateDecision(
            allowed=True,
            policy=policy,
            projected_cost=projected,
            approval_required=approval_required,
        )

    def _check_duration(
        self,
        policy: TenantMeteringPolicy,
        requested: int | None,
    ) -> GateDecision | None:
        if requested is None or requested <= 0:
            logger.warning("Start denied: tenant=%s countdown duration=%r", self._tenant_id, requested)
            return GateDecision(
                allowed=False,
                code=InvalidDuration.code,
                reason=f"Countdown sessions need a positive planned duration (got {requested!r}).",
                policy=policy,
            )
        cap = policy.max_session_duration_seconds
        if cap is not None and requested > cap:
            logger.warning(
                "Start denied: tenant=%s duration=%ds exceeds cap=%ds",
                self._tenant_id,
                requested,
                cap,
            )
            return GateDecision(
                allowed=False,
                code=InvalidDuration.code,
                reason=f"Requested duration {requested}s exceeds the tenant maximum of {cap}s.",
                policy=policy,
            )
        return None
