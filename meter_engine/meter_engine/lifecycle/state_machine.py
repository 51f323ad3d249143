"""Lifecycle transitions for metered sessions.

Every function here is pure: it takes the last committed
:class:`MeteredSession` and the transition instant, and returns a
:class:`Transition` holding the next session state.  Persistence and
single-writer serialization live in the service layer, which commits the
returned session with a version compare-and-swap.

State graph::

    running ──pause──▶ paused ──resume──▶ running
       │                  │
       ├──stop────────────┴──▶ stopped   (terminal)
       └──auto_expire─────────▶ expired  (terminal, countdown only)

Terminal transitions are idempotent: applying ``stop`` or ``expire`` to a
terminal session yields a no-op transition carrying the frozen record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from meter_engine.accrual.calculator import (
    DEFAULT_COST_QUANTUM,
    active_time,
    cost,
    cost_for_duration,
    countdown_deadline,
    expiry_instant,
    freeze_cost,
)
from meter_engine.errors import InvalidDuration, InvalidTransition
from meter_engine.models.session import (
    MeteredSession,
    PauseInterval,
    SessionAction,
    SessionMode,
    SessionStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Outcome of applying a lifecycle operation.

    ``action`` is ``None`` when nothing changed (idempotent terminal
    requests, or a live session that is not yet overdue).
    """

    session: MeteredSession
    action: SessionAction | None = None

    @property
    def changed(self) -> bool:
        return self.action is not None

    @property
    def terminal(self) -> bool:
        return self.action in (SessionAction.STOP, SessionAction.EXPIRE)


def _latest_timestamp(session: MeteredSession) -> datetime:
    latest = session.started_at
    for interval in session.pause_intervals:
        latest = max(latest, interval.paused_at)
        if interval.resumed_at is not None:
            latest = max(latest, interval.resumed_at)
    return latest


def _not_before_history(session: MeteredSession, at: datetime) -> datetime:
    """Clamp *at* so a skewed clock can never produce a backwards interval."""
    return max(at, _latest_timestamp(session))


def _advance(session: MeteredSession, **changes: Any) -> MeteredSession:
    """Return a copy of *session* with *changes* applied and version bumped."""
    updated = session.model_copy(update={**changes, "version": session.version + 1})
    return updated.model_copy(update={"expires_at": countdown_deadline(updated)})


def start(
    *,
    tenant_id: str,
    resource_id: str,
    subject_id: str,
    rate_per_minute: Decimal,
    mode: SessionMode,
    at: datetime,
    planned_duration_seconds: int | None = None,
    notes: str | None = None,
) -> MeteredSession:
    """Create a session directly in ``running`` state.

    Raises
    ------
    InvalidDuration
        If a countdown session has no positive planned duration.
    """
    if mode is SessionMode.COUNTDOWN:
        if planned_duration_seconds is None or planned_duration_seconds <= 0:
            raise InvalidDuration(
                f"Countdown sessions need a positive planned duration (got {planned_duration_seconds!r})."
            )
    else:
        planned_duration_seconds = None

    session = MeteredSession(
        tenant_id=tenant_id,
        resource_id=resource_id,
        subject_id=subject_id,
        rate_per_minute=rate_per_minute,
        mode=mode,
        planned_duration_seconds=planned_duration_seconds,
        started_at=at,
        status=SessionStatus.RUNNING,
        notes=notes,
    )
    return session.model_copy(update={"expires_at": countdown_deadline(session)})


def pause(session: MeteredSession, at: datetime) -> Transition:
    """``running → paused``: open a new pause interval."""
    if session.status is not SessionStatus.RUNNING:
        raise InvalidTransition(
            f"Cannot pause session {session.session_id} in state '{session.status.value}'.",
            status=session.status.value,
        )
    at = _not_before_history(session, at)
    intervals = [*session.pause_intervals, PauseInterval(paused_at=at)]
    updated = _advance(session, status=SessionStatus.PAUSED, pause_intervals=intervals)
    return Transition(updated, SessionAction.PAUSE)


def resume(session: MeteredSession, at: datetime) -> Transition:
    """``paused → running``: close the open pause interval."""
    if session.status is not SessionStatus.PAUSED or session.open_pause is None:
        raise InvalidTransition(
            f"Cannot resume session {session.session_id} in state '{session.status.value}'.",
            status=session.status.value,
        )
    at = _not_before_history(session, at)
    intervals = [*session.pause_intervals[:-1], session.pause_intervals[-1].model_copy(update={"resumed_at": at})]
    updated = _advance(session, status=SessionStatus.RUNNING, pause_intervals=intervals)
    return Transition(updated, SessionAction.RESUME)


def settle(
    session: MeteredSession,
    at: datetime,
    quantum: Decimal = DEFAULT_COST_QUANTUM,
) -> Transition:
    """Expire a countdown session whose budget ran out by *at*; otherwise no-op."""
    if expiry_instant(session, at) is None:
        return Transition(session)
    return expire(session, at, quantum)


def stop(
    session: MeteredSession,
    at: datetime,
    quantum: Decimal = DEFAULT_COST_QUANTUM,
) -> Transition:
    """``running|paused → stopped`` and freeze the final cost.

    Idempotent on terminal sessions.  A countdown session that already ran
    out is expired at its deadline instead, so no time past the planned
    duration is ever billed.
    """
    if session.is_terminal:
        return Transition(session)

    overdue = settle(session, at, quantum)
    if overdue.changed:
        return overdue

    at = _not_before_history(session, at)
    intervals = list(session.pause_intervals)
    if intervals and intervals[-1].is_open:
        intervals[-1] = intervals[-1].model_copy(update={"resumed_at": at})

    closed = session.model_copy(update={"pause_intervals": intervals, "stopped_at": at})
    final_cost = freeze_cost(cost_for_duration(active_time(closed, at), session.rate_per_minute), quantum)
    updated = _advance(
        session,
        status=SessionStatus.STOPPED,
        pause_intervals=intervals,
        stopped_at=at,
        final_cost=final_cost,
    )
    return Transition(updated, SessionAction.STOP)


def expire(
    session: MeteredSession,
    at: datetime,
    quantum: Decimal = DEFAULT_COST_QUANTUM,
) -> Transition:
    """``running|paused → expired`` for a countdown session with no time left.

    ``stopped_at`` is set to the instant the budget ran out, and the final
    cost is the cost of the full planned duration.  Idempotent on terminal
    sessions.

    Raises
    ------
    InvalidTransition
        If the session is open-ended or still has remaining time.
    """
    if session.is_terminal:
        return Transition(session)
    if session.mode is not SessionMode.COUNTDOWN or session.planned_duration_seconds is None:
        raise InvalidTransition(
            f"Session {session.session_id} is open-ended and cannot expire.",
            status=session.status.value,
        )

    deadline = expiry_instant(session, at)
    if deadline is None:
        raise InvalidTransition(
            f"Session {session.session_id} still has remaining time.",
            status=session.status.value,
        )

    intervals = [interval for interval in session.pause_intervals if interval.paused_at < deadline]
    final_cost = freeze_cost(cost(session.planned_duration_seconds, session.rate_per_minute), quantum)
    updated = _advance(
        session,
        status=SessionStatus.EXPIRED,
        pause_intervals=intervals,
        stopped_at=deadline,
        final_cost=final_cost,
    )
    logger.debug("Session %s expired at %s", session.session_id, deadline.isoformat())
    return Transition(updated, SessionAction.EXPIRE)
