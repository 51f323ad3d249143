"""Background expiration sweeper for countdown sessions.

Runs as an ``asyncio`` background task, independently of client requests.
Each cycle:

1. selects live countdown sessions whose persisted ``expires_at`` is at or
   before now;
2. re-derives expiry from the persisted timestamps and expires each one
   through :meth:`SessionService.expire_if_due`, so it is serialized with
   client mutations by the same version compare-and-swap;
3. retries reconciliation of terminal sessions still marked unexported.

Database errors are logged and retried on the next cycle; the loop never
dies on them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from meter_engine.errors import (
    ConcurrentModification,
    InvalidTransition,
    MeteringError,
    NotFound,
    TransientStoreError,
)
from meter_engine.state.repository import SessionRepository
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_service.config import ServiceSettings, load_service_settings
from meter_service.services.session_service import SessionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Counts from one sweeper cycle."""

    expired: int = 0
    reconciled: int = 0


class ExpirationSweeper:
    """AsyncIO background task that expires overdue countdown sessions.

    Parameters
    ----------
    service:
        The session service used to apply expirations.
    session_factory:
        Factory for the read-only selection query.
    settings:
        Supplies ``sweep_interval_seconds`` and ``sweep_batch_size``.
    tenant_id:
        Restrict the background loop to one tenant; ``None`` sweeps all.
    """

    def __init__(
        self,
        service: SessionService,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ServiceSettings | None = None,
        *,
        tenant_id: str | None = None,
    ) -> None:
        self._service = service
        self._session_factory = session_factory
        self._settings = settings or load_service_settings()
        self._tenant_id = tenant_id
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweeper loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweeper background task."""
        if self._running:
            logger.warning("ExpirationSweeper already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "ExpirationSweeper started (interval=%.1fs tenant=%s)",
            self._settings.sweep_interval_seconds,
            self._tenant_id or "*",
        )

    async def stop(self) -> None:
        """Stop the sweeper gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None
        logger.info("ExpirationSweeper stopped")

    async def _run_loop(self) -> None:
        try:
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except (OperationalError, InterfaceError, TransientStoreError) as exc:
                    logger.error("ExpirationSweeper database error: %s", exc, exc_info=True)
                except MeteringError as exc:
                    logger.error("ExpirationSweeper cycle failed: %s", exc, exc_info=True)
                except Exception as exc:
                    logger.critical("ExpirationSweeper unexpected error: %s", exc, exc_info=True)
                    raise
                await asyncio.sleep(self._settings.sweep_interval_seconds)
        finally:
            # A dead task must not report itself as running.
            self._running = False

    async def run_once(self) -> SweepResult:
        """One full cycle: expire overdue sessions, then retry pending exports."""
        expired = await self.sweep_expired(self._tenant_id)
        reconciled = await self._service.reconciler.reconcile_pending(
            tenant_id=self._tenant_id,
            limit=self._settings.sweep_batch_size,
        )
        return SweepResult(expired=expired, reconciled=reconciled)

    async def sweep_expired(self, tenant_id: str | None = None) -> int:
        """Expire every live countdown session whose deadline has passed.

        Returns the number of sessions this call moved to ``expired``.
        Sessions stopped, paused or expired concurrently are skipped.
        """
        now = self._service.now()
        async with self._session_factory() as db:
            due = await SessionRepository(db).list_due_for_expiry(
                now,
                tenant_id=tenant_id,
                limit=self._settings.sweep_batch_size,
            )

        expired = 0
        for session in due:
            try:
                if await self._service.expire_if_due(session.session_id):
                    expired += 1
            except (InvalidTransition, NotFound) as exc:
                logger.debug("Skipped session %s during sweep: %s", session.session_id, exc)
            except ConcurrentModification:
                logger.warning("Session %s kept changing during sweep; retrying next cycle", session.session_id)
            except TransientStoreError as exc:
                logger.warning("Could not expire session %s (%s); retrying next cycle", session.session_id, exc)

        if due:
            logger.info("Sweep expired %d/%d due sessions", expired, len(due))
        return expired
