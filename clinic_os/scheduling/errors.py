"""Exceptions raised by the scheduling engine."""

from datetime import date, time
from typing import Any, Optional


class SchedulingError(Exception):
    """Base exception for scheduling errors."""

    pass


class InvalidRuleError(SchedulingError):
    """Recurrence rule is malformed or does not fit its anchor date."""

    def __init__(
        self,
        message: str,
        rule: Optional[Any] = None,
        anchor_date: Optional[date] = None,
    ):
        super().__init__(message)
        self.rule = rule
        self.anchor_date = anchor_date


class InvalidOperationError(SchedulingError):
    """Lifecycle operation called with malformed arguments."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.start = start
        self.end = end


class SlotConflictError(SchedulingError):
    """The booking store already holds an active appointment for the slot."""

    def __init__(
        self,
        therapist_id: str,
        conflict_date: date,
        conflict_time: time,
        slot_key: Optional[Any] = None,
    ):
        super().__init__(
            f"Therapist {therapist_id} is already booked on "
            f"{conflict_date.isoformat()} at {conflict_time.strftime('%H:%M')}"
        )
        self.therapist_id = therapist_id
        self.date = conflict_date
        self.time = conflict_time
        self.slot_key = slot_key


class EmptySelectionError(SchedulingError):
    """Commit attempted with no selected slots."""

    def __init__(self, message: str = "Select at least one slot before committing"):
        super().__init__(message)
