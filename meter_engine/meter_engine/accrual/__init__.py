"""Cost accrual and time accounting for metered sessions."""

from meter_engine.accrual.calculator import (
    DEFAULT_COST_QUANTUM,
    active_time,
    cost,
    cost_for_duration,
    countdown_deadline,
    expiry_instant,
    freeze_cost,
    is_overdue,
    project,
    remaining_time,
)

__all__ = [
    "DEFAULT_COST_QUANTUM",
    "active_time",
    "cost",
    "cost_for_duration",
    "countdown_deadline",
    "expiry_instant",
    "freeze_cost",
    "is_overdue",
    "project",
    "remaining_time",
]
