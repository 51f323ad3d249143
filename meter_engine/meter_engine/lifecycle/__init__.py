"""Session lifecycle rules (pure state transitions)."""

from meter_engine.lifecycle.state_machine import Transition, expire, pause, resume, settle, start, stop

__all__ = ["Transition", "expire", "pause", "resume", "settle", "start", "stop"]
