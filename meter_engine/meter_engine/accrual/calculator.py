"""Time accounting and cost accrual for metered sessions.

All figures are recomputed from the persisted timestamps (``started_at``,
``pause_intervals``, ``stopped_at``) at a caller-supplied instant; nothing
here keeps a running counter.  Durations are handled as integer
microseconds and costs as :class:`~decimal.Decimal` so that long sessions
accumulate no floating-point drift.

Rounding is applied only by :func:`freeze_cost`, at the terminal
transition.  Estimates for live sessions are deliberately unrounded.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from meter_engine.models.session import MeteredSession, SessionMode, SessionStatus, SessionView

_MICROS_PER_MINUTE = Decimal(60_000_000)
_ONE_MICRO = timedelta(microseconds=1)
_ZERO = timedelta(0)

DEFAULT_COST_QUANTUM = Decimal("0.01")


def _micros(delta: timedelta) -> int:
    return delta // _ONE_MICRO


def cost(active_seconds: int | Decimal, rate_per_minute: Decimal) -> Decimal:
    """Return ``active_seconds / 60 * rate_per_minute`` as an exact Decimal."""
    return Decimal(active_seconds) * Decimal(rate_per_minute) / Decimal(60)


def cost_for_duration(active: timedelta, rate_per_minute: Decimal) -> Decimal:
    """Cost of *active* time at *rate_per_minute*, exact to the microsecond."""
    return Decimal(_micros(active)) * Decimal(rate_per_minute) / _MICROS_PER_MINUTE


def freeze_cost(amount: Decimal, quantum: Decimal = DEFAULT_COST_QUANTUM) -> Decimal:
    """Round *amount* to *quantum* (half-up).  Used once, when a session ends."""
    return Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


def paused_time(session: MeteredSession, at: datetime) -> timedelta:
    """Total pause time up to *at*; an open pause counts until *at*."""
    total = _ZERO
    for interval in session.pause_intervals:
        end = interval.resumed_at if interval.resumed_at is not None else at
        end = min(end, at)
        if end > interval.paused_at:
            total += end - interval.paused_at
    return total


def closed_pause_time(session: MeteredSession) -> timedelta:
    """Total duration of resolved pauses only."""
    total = _ZERO
    for interval in session.pause_intervals:
        if interval.resumed_at is not None:
            total += interval.resumed_at - interval.paused_at
    return total


def active_time(session: MeteredSession, at: datetime) -> timedelta:
    """Billable time as of *at* (or ``stopped_at`` for terminal sessions).

    ``(end - started_at) - pauses``, never negative.
    """
    end = session.stopped_at if session.stopped_at is not None else at
    if end <= session.started_at:
        return _ZERO
    active = (end - session.started_at) - paused_time(session, end)
    return max(active, _ZERO)


def remaining_time(session: MeteredSession, at: datetime) -> timedelta | None:
    """Countdown time left as of *at*; ``None`` for open-ended sessions."""
    if session.mode is not SessionMode.COUNTDOWN or session.planned_duration_seconds is None:
        return None
    planned = timedelta(seconds=session.planned_duration_seconds)
    return max(planned - active_time(session, at), _ZERO)


def countdown_deadline(session: MeteredSession) -> datetime | None:
    """Wall-clock instant at which a running countdown session runs out.

    Only defined while the session is ``running``: a paused countdown does
    not consume its budget, so it has no deadline until resumed.
    """
    if (
        session.mode is not SessionMode.COUNTDOWN
        or session.planned_duration_seconds is None
        or session.status is not SessionStatus.RUNNING
        or session.open_pause is not None
    ):
        return None
    planned = timedelta(seconds=session.planned_duration_seconds)
    return session.started_at + planned + closed_pause_time(session)


def expiry_instant(session: MeteredSession, at: datetime) -> datetime | None:
    """Return the instant a non-terminal countdown session hit zero, if by *at*.

    For a paused session the budget can only have run out before the pause
    was opened, in which case the deadline computed from the pauses closed
    before it is returned.
    """
    if session.is_terminal or session.mode is not SessionMode.COUNTDOWN:
        return None
    if session.planned_duration_seconds is None:
        return None
    planned = timedelta(seconds=session.planned_duration_seconds)
    cursor = session.started_at
    budget = planned
    for interval in session.pause_intervals:
        running_span = interval.paused_at - cursor
        if running_span >= budget:
            deadline = cursor + budget
            return deadline if deadline <= at else None
        budget -= running_span
        if interval.resumed_at is None:
            return None
        cursor = interval.resumed_at
    deadline = cursor + budget
    return deadline if deadline <= at else None


def is_overdue(session: MeteredSession, at: datetime) -> bool:
    """True when a live countdown session has no remaining time at *at*."""
    return expiry_instant(session, at) is not None


def project(
    session: MeteredSession,
    at: datetime,
    *,
    approval_threshold_cost: Decimal | None = None,
) -> SessionView:
    """Build a :class:`SessionView` with projections computed at *at*.

    A live countdown past its deadline is measured at the deadline, so
    neither the active time nor the estimate runs past the planned budget.
    """
    deadline = expiry_instant(session, at)
    measured_at = deadline if deadline is not None else at
    active = active_time(session, measured_at)
    remaining = remaining_time(session, measured_at)
    if session.is_terminal and session.final_cost is not None:
        estimated = session.final_cost
    else:
        estimated = cost_for_duration(active, session.rate_per_minute)

    projected: Decimal | None = None
    if session.mode is SessionMode.COUNTDOWN and session.planned_duration_seconds is not None:
        projected = cost(session.planned_duration_seconds, session.rate_per_minute)

    approval_required = False
    if approval_threshold_cost is not None:
        basis = projected if projected is not None else estimated
        approval_required = basis > approval_threshold_cost

    return SessionView(
        session=session,
        as_of=at,
        active_seconds=active.total_seconds(),
        remaining_seconds=remaining.total_seconds() if remaining is not None else None,
        estimated_cost=estimated,
        projected_cost=projected,
        approval_required=approval_required,
    )
