"""Tests for meter_engine.lifecycle.state_machine -- pure lifecycle transitions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from meter_engine import lifecycle
from meter_engine.accrual.calculator import active_time
from meter_engine.errors import InvalidDuration, InvalidTransition
from meter_engine.models.session import MeteredSession, SessionAction, SessionMode, SessionStatus

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _start(
    mode: SessionMode = SessionMode.OPEN_ENDED,
    planned: int | None = None,
    rate: str = "1.00",
) -> MeteredSession:
    return lifecycle.start(
        tenant_id="acme",
        resource_id="car-1",
        subject_id="alice",
        rate_per_minute=Decimal(rate),
        mode=mode,
        at=T0,
        planned_duration_seconds=planned,
    )


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


class TestStart:
    """Verify session creation."""

    def test_open_ended_starts_running(self) -> None:
        session = _start()
        assert session.status is SessionStatus.RUNNING
        assert session.started_at == T0
        assert session.version == 1
        assert session.expires_at is None
        assert session.session_id.startswith("ses-")

    def test_countdown_sets_deadline(self) -> None:
        session = _start(SessionMode.COUNTDOWN, planned=300)
        assert session.expires_at == _at(300)

    def test_open_ended_ignores_planned_duration(self) -> None:
        session = _start(SessionMode.OPEN_ENDED, planned=300)
        assert session.planned_duration_seconds is None

    @pytest.mark.parametrize("planned", [0, -5, None])
    def test_countdown_requires_positive_duration(self, planned: int | None) -> None:
        with pytest.raises(InvalidDuration):
            _start(SessionMode.COUNTDOWN, planned=planned)


# ---------------------------------------------------------------------------
# pause / resume
# ---------------------------------------------------------------------------


class TestPauseResume:
    """Verify pause and resume transitions and their rejections."""

    def test_pause_opens_interval_and_bumps_version(self) -> None:
        transition = lifecycle.pause(_start(), _at(60))
        session = transition.session
        assert transition.action is SessionAction.PAUSE
        assert session.status is SessionStatus.PAUSED
        assert session.open_pause is not None
        assert session.open_pause.paused_at == _at(60)
        assert session.version == 2

    def test_resume_closes_interval(self) -> None:
        paused = lifecycle.pause(_start(), _at(60)).session
        resumed = lifecycle.resume(paused, _at(90)).session
        assert resumed.status is SessionStatus.RUNNING
        assert resumed.pause_intervals[0].resumed_at == _at(90)
        assert resumed.version == 3

    def test_pause_on_paused_is_rejected(self) -> None:
        paused = lifecycle.pause(_start(), _at(60)).session
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.pause(paused, _at(70))
        assert exc_info.value.status == "paused"
        assert paused.version == 2
        assert len(paused.pause_intervals) == 1

    def test_resume_on_running_is_rejected(self) -> None:
        running = _start()
        with pytest.raises(InvalidTransition):
            lifecycle.resume(running, _at(10))
        assert running.status is SessionStatus.RUNNING
        assert running.pause_intervals == []

    def test_pause_on_terminal_is_rejected(self) -> None:
        stopped = lifecycle.stop(_start(), _at(60)).session
        with pytest.raises(InvalidTransition):
            lifecycle.pause(stopped, _at(70))

    def test_countdown_deadline_cleared_while_paused(self) -> None:
        paused = lifecycle.pause(_start(SessionMode.COUNTDOWN, planned=300), _at(100)).session
        assert paused.expires_at is None
        resumed = lifecycle.resume(paused, _at(150)).session
        assert resumed.expires_at == _at(350)

    def test_skewed_clock_never_produces_backwards_interval(self) -> None:
        paused = lifecycle.pause(_start(), _at(60)).session
        resumed = lifecycle.resume(paused, _at(30)).session
        interval = resumed.pause_intervals[0]
        assert interval.resumed_at == interval.paused_at == _at(60)


# ---------------------------------------------------------------------------
# stop
# ---------------------------------------------------------------------------


class TestStop:
    """Verify stop freezes the cost and is idempotent."""

    def test_stop_freezes_cost(self) -> None:
        transition = lifecycle.stop(_start(rate="2.00"), _at(630))
        session = transition.session
        assert transition.action is SessionAction.STOP
        assert transition.terminal
        assert session.status is SessionStatus.STOPPED
        assert session.stopped_at == _at(630)
        assert session.final_cost == Decimal("21.00")

    def test_stop_closes_open_pause(self) -> None:
        paused = lifecycle.pause(_start(), _at(60)).session
        stopped = lifecycle.stop(paused, _at(120)).session
        assert stopped.pause_intervals[0].resumed_at == _at(120)
        assert active_time(stopped, _at(999)) == timedelta(seconds=60)
        assert stopped.final_cost == Decimal("1.00")

    def test_stop_rounds_half_up(self) -> None:
        # 31 s at 1.00/min = 0.51666... -> 0.52
        stopped = lifecycle.stop(_start(), _at(31)).session
        assert stopped.final_cost == Decimal("0.52")

    def test_double_stop_returns_same_result(self) -> None:
        first = lifecycle.stop(_start(rate="2.00"), _at(630)).session
        second = lifecycle.stop(first, _at(5_000))
        assert not second.changed
        assert second.session.final_cost == first.final_cost
        assert second.session.version == first.version
        assert second.session.stopped_at == _at(630)

    def test_stop_after_countdown_deadline_expires_instead(self) -> None:
        running = _start(SessionMode.COUNTDOWN, planned=300)
        transition = lifecycle.stop(running, _at(900))
        assert transition.action is SessionAction.EXPIRE
        assert transition.session.status is SessionStatus.EXPIRED
        assert transition.session.stopped_at == _at(300)
        assert transition.session.final_cost == Decimal("5.00")

    def test_stop_before_countdown_deadline_bills_actual_time(self) -> None:
        running = _start(SessionMode.COUNTDOWN, planned=300)
        stopped = lifecycle.stop(running, _at(120)).session
        assert stopped.status is SessionStatus.STOPPED
        assert stopped.final_cost == Decimal("2.00")


# ---------------------------------------------------------------------------
# expire
# ---------------------------------------------------------------------------


class TestExpire:
    """Verify countdown expiry."""

    def test_countdown_with_pause_expires_at_shifted_deadline(self) -> None:
        """300 s planned, paused 50 s after 100 s: expires at wall-clock 350 s."""
        session = _start(SessionMode.COUNTDOWN, planned=300)
        session = lifecycle.pause(session, _at(100)).session
        session = lifecycle.resume(session, _at(150)).session

        transition = lifecycle.expire(session, _at(400))
        expired = transition.session
        assert transition.action is SessionAction.EXPIRE
        assert expired.status is SessionStatus.EXPIRED
        assert expired.stopped_at == _at(350)
        assert expired.final_cost == Decimal("5.00")
        assert active_time(expired, _at(10_000)) == timedelta(seconds=300)
        assert expired.expires_at is None

    def test_expire_before_deadline_is_rejected(self) -> None:
        session = _start(SessionMode.COUNTDOWN, planned=300)
        with pytest.raises(InvalidTransition):
            lifecycle.expire(session, _at(299))

    def test_open_ended_cannot_expire(self) -> None:
        with pytest.raises(InvalidTransition):
            lifecycle.expire(_start(), _at(10_000))

    def test_expire_is_idempotent_on_terminal(self) -> None:
        expired = lifecycle.expire(_start(SessionMode.COUNTDOWN, planned=60), _at(61)).session
        again = lifecycle.expire(expired, _at(500))
        assert not again.changed
        assert again.session == expired

    def test_paused_countdown_does_not_consume_budget(self) -> None:
        session = _start(SessionMode.COUNTDOWN, planned=300)
        paused = lifecycle.pause(session, _at(100)).session
        assert not lifecycle.settle(paused, _at(100_000)).changed

    def test_pause_opened_after_deadline_is_dropped_on_expiry(self) -> None:
        session = _start(SessionMode.COUNTDOWN, planned=300)
        late_pause = lifecycle.pause(session, _at(320)).session
        expired = lifecycle.expire(late_pause, _at(330)).session
        assert expired.pause_intervals == []
        assert expired.stopped_at == _at(300)
