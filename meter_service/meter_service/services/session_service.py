"""Session lifecycle service.

Wraps the pure rules in :mod:`meter_engine.lifecycle` with persistence and
single-writer serialization.  Every mutation runs as one transaction:

* load the last committed session;
* compute the next state with the lifecycle rules at the current instant;
* write it with a version compare-and-swap.

A writer that loses the compare-and-swap reloads and re-evaluates, so a
losing ``stop`` observes the frozen result of the winner and a losing
``pause`` observes the terminal state.  After a terminal transition commits,
the :class:`RevenueReconciler` is invoked; if it fails the session stays
unexported and the sweeper retries it.

Countdown deadlines are enforced on every client mutation as well as by the
sweeper: a ``stop`` that arrives after the deadline expires the session at
the deadline, and a ``pause``/``resume`` that arrives after it commits the
expiry first and then fails with :class:`InvalidTransition`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from meter_engine import lifecycle
from meter_engine.accrual.calculator import DEFAULT_COST_QUANTUM, project
from meter_engine.config import Settings, load_settings
from meter_engine.errors import (
    ConcurrentModification,
    InvalidTransition,
    MeteringError,
    NotFound,
    ResourceBusy,
    TransientStoreError,
)
from meter_engine.lifecycle import Transition
from meter_engine.models.session import (
    MeteredSession,
    SessionAction,
    SessionActionRecord,
    SessionMode,
    SessionStatus,
    SessionView,
)
from meter_engine.state.repository import SessionRepository, TariffRepository, TenantPolicyRepository
from meter_engine.tariff.cache import TariffCache
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_service.config import ServiceSettings, load_service_settings
from meter_service.ledger import build_ledger
from meter_service.services.authorization_gate import AuthorizationGate
from meter_service.services.revenue_reconciler import RevenueReconciler

logger = logging.getLogger(__name__)

# Evaluates a transition on the last committed session.  The optional error
# is raised after the transition (if any) has been committed.
_Evaluator = Callable[[MeteredSession, datetime], tuple[Transition, MeteringError | None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class _Outcome:
    view: SessionView
    transition: Transition


class SessionService:
    """Start, pause, resume, stop and expire metered sessions.

    Parameters
    ----------
    session_factory:
        Factory for database sessions; each operation opens its own.
    settings:
        Engine settings (cost quantum, tariff cache).
    service_settings:
        Service settings (compare-and-swap attempts, ledger backend).
    tariff_cache:
        Read-through cache for tariff lookups.  Built from *settings* when
        omitted.
    reconciler:
        Invoked after every terminal transition.  Built from
        *service_settings* when omitted.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        service_settings: ServiceSettings | None = None,
        tariff_cache: TariffCache | None = None,
        reconciler: RevenueReconciler | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or load_settings()
        self._service_settings = service_settings or load_service_settings()
        self._clock = clock
        self._quantum = self._settings.cost_quantum or DEFAULT_COST_QUANTUM
        self._tariffs = tariff_cache or TariffCache(
            ttl_seconds=self._settings.tariff_cache_ttl_seconds,
            max_entries=self._settings.tariff_cache_max_entries,
            enabled=self._settings.tariff_cache_enabled,
        )
        self._reconciler = reconciler or RevenueReconciler(
            session_factory,
            build_ledger(self._service_settings),
            clock=clock,
            cost_quantum=self._quantum,
        )

    def now(self) -> datetime:
        """Current instant according to the service clock."""
        return self._clock()

    @property
    def tariff_cache(self) -> TariffCache:
        return self._tariffs

    @property
    def reconciler(self) -> RevenueReconciler:
        return self._reconciler

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on success, roll back on any error.

        Store failures surface as :class:`TransientStoreError`; the prior
        committed state is untouched.
        """
        async with self._session_factory() as db:
            try:
                yield db
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error("Session store error: %s", exc, exc_info=True)
                raise TransientStoreError("The session store is unavailable; retry the request.") from exc
            except Exception:
                await db.rollback()
                raise

    async def _view(self, db: AsyncSession, session: MeteredSession, at: datetime) -> SessionView:
        policy = await TenantPolicyRepository(db, session.tenant_id).get()
        threshold = policy.approval_threshold_cost if policy is not None else None
        return project(session, at, approval_threshold_cost=threshold)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(
        self,
        tenant_id: str,
        resource_id: str,
        subject_id: str,
        mode: SessionMode = SessionMode.OPEN_ENDED,
        planned_duration_seconds: int | None = None,
        notes: str | None = None,
        *,
        actor: str = "system",
    ) -> SessionView:
        """Authorize and create a ``running`` session.

        Raises
        ------
        AuthorizationDenied
            The tenant has no policy or is not authorized.
        QuotaExceeded
            The tenant is at its concurrent-session limit.
        InvalidDuration
            Countdown duration is non-positive or above the tenant cap.
        ResourceBusy
            The resource already carries a running or paused session.
        NotFound
            The resource has no active tariff.
        """
        async with self._transaction() as db:
            # Read-only lookup; a missing tariff is reported after the gate checks.
            tariff_repo = TariffRepository(db, tenant_id)
            tariff = await self._tariffs.get_or_load(tenant_id, resource_id, lambda: tariff_repo.get(resource_id))
            rate = tariff.rate_per_minute if tariff is not None and tariff.is_active else None

            gate = AuthorizationGate(db, tenant_id)
            decision = await gate.authorize_start(mode, planned_duration_seconds, rate_per_minute=rate)
            decision.raise_if_denied()

            sessions = SessionRepository(db, self._quantum)
            busy = await sessions.find_active_for_resource(tenant_id, resource_id)
            if busy is not None:
                logger.warning(
                    "Start denied: resource=%s already metered by session %s",
                    resource_id,
                    busy.session_id,
                )
                raise ResourceBusy(f"Resource '{resource_id}' already has an active session ({busy.session_id}).")

            if rate is None:
                raise NotFound(f"No active tariff for resource '{resource_id}' of tenant '{tenant_id}'.")

            now = self._clock()
            session = lifecycle.start(
                tenant_id=tenant_id,
                resource_id=resource_id,
                subject_id=subject_id,
                rate_per_minute=rate,
                mode=mode,
                at=now,
                planned_duration_seconds=planned_duration_seconds,
                notes=notes,
            )
            await sessions.insert(session)
            await sessions.record_action(session, SessionAction.START, now, actor)
            view = await self._view(db, session, now)
            if decision.approval_required:
                logger.info(
                    "Session %s needs approval: projected cost %s",
                    session.session_id,
                    decision.projected_cost,
                )

        logger.info(
            "Session started: id=%s tenant=%s resource=%s mode=%s rate=%s",
            session.session_id,
            tenant_id,
            resource_id,
            mode.value,
            rate,
        )
        return view

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def pause_session(self, session_id: str, *, actor: str = "system") -> SessionView:
        """``running → paused``.  Raises :class:`InvalidTransition` from any other state."""
        return (await self._mutate(session_id, self._evaluate_pause, actor=actor)).view

    async def resume_session(self, session_id: str, *, actor: str = "system") -> SessionView:
        """``paused → running``.  Raises :class:`InvalidTransition` from any other state."""
        return (await self._mutate(session_id, self._evaluate_resume, actor=actor)).view

    async def stop_session(self, session_id: str, *, actor: str = "system") -> SessionView:
        """``running|paused → stopped``; idempotent on terminal sessions."""
        return (await self._mutate(session_id, self._evaluate_stop, actor=actor)).view

    async def auto_expire(self, session_id: str) -> SessionView:
        """``running|paused → expired`` for a countdown session with no time left.

        Idempotent on terminal sessions.  Raises :class:`InvalidTransition`
        for open-ended sessions and for countdowns with time remaining.
        """
        return (await self._mutate(session_id, self._evaluate_expire)).view

    async def expire_if_due(self, session_id: str) -> bool:
        """Expire *session_id* if its countdown ran out; ``True`` if this call expired it."""
        outcome = await self._mutate(session_id, self._evaluate_settle)
        return outcome.transition.action is SessionAction.EXPIRE

    def _evaluate_pause(self, current: MeteredSession, at: datetime) -> tuple[Transition, MeteringError | None]:
        settled = lifecycle.settle(current, at, self._quantum)
        if settled.changed:
            return settled, InvalidTransition(
                f"Cannot pause session {current.session_id}: its countdown has run out.",
                status=SessionStatus.EXPIRED.value,
            )
        return lifecycle.pause(current, at), None

    def _evaluate_resume(self, current: MeteredSession, at: datetime) -> tuple[Transition, MeteringError | None]:
        settled = lifecycle.settle(current, at, self._quantum)
        if settled.changed:
            return settled, InvalidTransition(
                f"Cannot resume session {current.session_id}: its countdown has run out.",
                status=SessionStatus.EXPIRED.value,
            )
        return lifecycle.resume(current, at), None

    def _evaluate_stop(self, current: MeteredSession, at: datetime) -> tuple[Transition, MeteringError | None]:
        return lifecycle.stop(current, at, self._quantum), None

    def _evaluate_expire(self, current: MeteredSession, at: datetime) -> tuple[Transition, MeteringError | None]:
        return lifecycle.expire(current, at, self._quantum), None

    def _evaluate_settle(self, current: MeteredSession, at: datetime) -> tuple[Transition, MeteringError | None]:
        return lifecycle.settle(current, at, self._quantum), None

    async def _mutate(
        self,
        session_id: str,
        evaluate: _Evaluator,
        *,
        actor: str = "system",
    ) -> _Outcome:
        """Load, evaluate and compare-and-swap, retrying on lost races."""
        attempts = self._service_settings.max_transition_attempts
        for attempt in range(1, attempts + 1):
            deferred: MeteringError | None = None
            won = False
            async with self._transaction() as db:
                sessions = SessionRepository(db, self._quantum)
                current = await sessions.get(session_id)
                if current is None:
                    raise NotFound(f"Session {session_id} not found.")

                now = self._clock()
                transition, deferred = evaluate(current, now)
                if transition.changed:
                    won = await sessions.compare_and_swap(transition.session, current.version)
                    if won:
                        assert transition.action is not None  # noqa: S101
                        await sessions.record_action(transition.session, transition.action, now, actor)
                if not transition.changed or won:
                    view = await self._view(db, transition.session, now)

            if transition.changed and not won:
                logger.info(
                    "Lost version race on session %s (attempt %d/%d); re-evaluating",
                    session_id,
                    attempt,
                    attempts,
                )
                continue

            if transition.changed:
                self._log_transition(transition)
                if transition.terminal:
                    await self._reconcile(session_id)
            if deferred is not None:
                raise deferred
            return _Outcome(view=view, transition=transition)

        logger.error("Giving up on session %s after %d concurrent modifications", session_id, attempts)
        raise ConcurrentModification(f"Session {session_id} kept changing concurrently; retry the request.")

    def _log_transition(self, transition: Transition) -> None:
        session = transition.session
        assert transition.action is not None  # noqa: S101
        logger.info(
            "Session %s: id=%s status=%s version=%d cost=%s",
            transition.action.value,
            session.session_id,
            session.status.value,
            session.version,
            session.final_cost,
            extra={
                "session": {
                    "session_id": session.session_id,
                    "tenant_id": session.tenant_id,
                    "action": transition.action.value,
                    "status": session.status.value,
                }
            },
        )

    async def _reconcile(self, session_id: str) -> None:
        try:
            await self._reconciler.reconcile(session_id)
        except TransientStoreError:
            logger.warning("Reconciliation of session %s deferred to the sweeper", session_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> SessionView:
        """Return the session with projections recomputed now.

        Reads never write: an overdue countdown is reported with zero
        remaining time until the sweeper or the next mutation expires it.
        """
        async with self._transaction() as db:
            session = await SessionRepository(db, self._quantum).get(session_id)
            if session is None:
                raise NotFound(f"Session {session_id} not found.")
            return await self._view(db, session, self._clock())

    async def list_active_sessions(self, tenant_id: str, subject_id: str | None = None) -> list[SessionView]:
        """Running and paused sessions of a tenant, oldest first."""
        async with self._transaction() as db:
            now = self._clock()
            sessions = await SessionRepository(db, self._quantum).list_active(tenant_id, subject_id)
            policy = await TenantPolicyRepository(db, tenant_id).get()
        threshold = policy.approval_threshold_cost if policy is not None else None
        return [project(s, now, approval_threshold_cost=threshold) for s in sessions]

    async def list_session_history(
        self,
        tenant_id: str,
        *,
        status: SessionStatus | None = None,
        resource_id: str | None = None,
        subject_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[SessionView], int]:
        """Terminal sessions of a tenant, newest first, plus the total count."""
        if status is not None and not status.is_terminal:
            raise ValueError(f"History only holds terminal sessions, not '{status.value}'.")
        async with self._transaction() as db:
            now = self._clock()
            sessions, total = await SessionRepository(db, self._quantum).list_history(
                tenant_id,
                status=status,
                resource_id=resource_id,
                subject_id=subject_id,
                limit=limit,
                offset=offset,
            )
        return [project(s, now) for s in sessions], total

    async def get_session_actions(self, session_id: str) -> list[SessionActionRecord]:
        """Action history of a session in the order the actions happened."""
        async with self._transaction() as db:
            repo = SessionRepository(db, self._quantum)
            if await repo.get(session_id) is None:
                raise NotFound(f"Session {session_id} not found.")
            return await repo.list_actions(session_id)

