"""Session models for the metering lifecycle.

A ``MeteredSession`` is the persisted, authoritative record of one metering
episode.  A ``SessionView`` wraps it with projections (active time,
remaining time, cost) recomputed from the persisted timestamps at a given
instant; views are what callers receive and are never written back.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class SessionMode(str, Enum):
    """How a session terminates."""

    OPEN_ENDED = "open_ended"
    COUNTDOWN = "countdown"


class SessionStatus(str, Enum):
    """Lifecycle state of a metered session."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.EXPIRED)


ACTIVE_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.RUNNING, SessionStatus.PAUSED)
TERMINAL_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.STOPPED, SessionStatus.EXPIRED)


class SessionAction(str, Enum):
    """Entries recorded in a session's action history."""

    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    EXPIRE = "expire"


def new_session_id() -> str:
    return f"ses-{uuid.uuid4().hex[:16]}"


class PauseInterval(BaseModel):
    """A single pause; ``resumed_at`` is ``None`` while the pause is open."""

    paused_at: datetime
    resumed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.resumed_at is None


class MeteredSession(BaseModel):
    """Authoritative session record as stored in the session store.

    Attributes
    ----------
    session_id:
        Immutable identifier.
    tenant_id, resource_id, subject_id:
        Immutable references to the billed tenant, the metered resource and
        the subject (person) the session is billed to.
    rate_per_minute:
        Tariff captured at start; later tariff changes never apply.
    mode:
        ``open_ended`` or ``countdown``.
    planned_duration_seconds:
        Countdown budget of active time; ``None`` for open-ended sessions.
    started_at:
        Set once at creation.
    pause_intervals:
        Ordered pauses; at most one open at a time.
    stopped_at:
        Set once on termination.  For expired sessions this is the instant
        the countdown reached zero, not the instant the sweeper noticed.
    status:
        Current lifecycle state.
    final_cost:
        Rounded cost frozen at the terminal transition.
    version:
        Optimistic concurrency counter, bumped on every committed write.
    expires_at:
        Derived countdown deadline while running; ``None`` otherwise.
    exported:
        Reconciliation bookkeeping; the only field that changes after a
        terminal state is reached.
    """

    session_id: str = Field(default_factory=new_session_id)
    tenant_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    subject_id: str = Field(..., min_length=1)
    rate_per_minute: Decimal = Field(..., ge=0)
    mode: SessionMode = SessionMode.OPEN_ENDED
    planned_duration_seconds: int | None = Field(default=None, gt=0)
    started_at: datetime
    pause_intervals: list[PauseInterval] = Field(default_factory=list)
    stopped_at: datetime | None = None
    status: SessionStatus = SessionStatus.RUNNING
    final_cost: Decimal | None = None
    version: int = Field(default=1, ge=1)
    expires_at: datetime | None = None
    exported: bool = False
    exported_at: datetime | None = None
    notes: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def open_pause(self) -> PauseInterval | None:
        if self.pause_intervals and self.pause_intervals[-1].is_open:
            return self.pause_intervals[-1]
        return None


class SessionView(BaseModel):
    """A session plus projections computed at ``as_of``.

    For live sessions ``estimated_cost`` is advisory and unrounded; for
    terminal sessions ``final_cost`` on the embedded session is the billed
    value and ``estimated_cost`` mirrors it.
    """

    session: MeteredSession
    as_of: datetime
    active_seconds: float
    remaining_seconds: float | None = None
    estimated_cost: Decimal
    projected_cost: Decimal | None = None
    approval_required: bool = False

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def final_cost(self) -> Decimal | None:
        return self.session.final_cost


class SessionActionRecord(BaseModel):
    """One row of a session's action history."""

    session_id: str
    action: SessionAction
    occurred_at: datetime
    actor: str = "system"
