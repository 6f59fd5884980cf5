"""
Recurrence calculation: turns a recurrence policy anchored at a day offset
into the calendar dates a template task falls on.

Pure functions, no I/O.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Optional

from config import settings

from .models import RecurrencePolicy


@dataclass(frozen=True)
class RecurrenceSettings:
    """Tunable recurrence constants (per tenant or per protocol)"""
    horizon_days: int = settings.PROTOCOL_HORIZON_DAYS
    monthly_interval_days: int = settings.PROTOCOL_MONTHLY_INTERVAL_DAYS

    def __post_init__(self):
        if self.horizon_days <= 0:
            raise ValueError(f"horizon_days must be positive, got {self.horizon_days}")
        if self.monthly_interval_days <= 0:
            raise ValueError(f"monthly_interval_days must be positive, got {self.monthly_interval_days}")

    def with_horizon(self, horizon_days: Optional[int]) -> "RecurrenceSettings":
        """Copy with a different horizon; None keeps the current one"""
        if horizon_days is None or horizon_days == self.horizon_days:
            return self
        return RecurrenceSettings(horizon_days=horizon_days, monthly_interval_days=self.monthly_interval_days)


DEFAULT_SETTINGS = RecurrenceSettings()


def horizon_end(anchor_date: date, horizon_days: int) -> date:
    """Last date for which recurring occurrences are generated"""
    return anchor_date + timedelta(days=horizon_days)


def expand(
    anchor_date: date,
    day_offset: int,
    policy: RecurrencePolicy,
    horizon_days: int = settings.PROTOCOL_HORIZON_DAYS,
    monthly_interval_days: int = settings.PROTOCOL_MONTHLY_INTERVAL_DAYS,
) -> "Occurrences":
    """
    Dates a task occurs on, in ascending order.

    One-time tasks yield exactly anchor_date + day_offset, even past the
    horizon. Repeating tasks yield the start date and then every step until
    the next candidate would fall after anchor_date + horizon_days; a start
    already past the horizon yields nothing.

    Args:
        anchor_date: Patient's anchor (surgery) date
        day_offset: Signed days from the anchor to the first occurrence
        policy: One-time or repeating rule
        horizon_days: How far past the anchor repeating tasks are generated
        monthly_interval_days: Step used for the monthly interval

    Raises:
        ValueError: If horizon_days is not positive
    """
    if horizon_days <= 0:
        raise ValueError(f"horizon_days must be positive, got {horizon_days}")

    step = None if policy.is_one_time else policy.step_days(monthly_interval_days)
    return Occurrences(
        start=anchor_date + timedelta(days=day_offset),
        step_days=step,
        end=horizon_end(anchor_date, horizon_days),
    )


@dataclass(frozen=True)
class Occurrences:
    """
    Lazy, finite date sequence. Iterating again starts over from the
    first occurrence.
    """
    start: date
    step_days: Optional[int]  # None for one-time
    end: date

    def __iter__(self) -> Iterator[date]:
        if self.step_days is None:
            yield self.start
            return

        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=self.step_days)

    def __len__(self) -> int:
        if self.step_days is None:
            return 1
        if self.start > self.end:
            return 0
        return (self.end - self.start).days // self.step_days + 1


def expand_with_settings(
    anchor_date: date,
    day_offset: int,
    policy: RecurrencePolicy,
    recurrence_settings: RecurrenceSettings = DEFAULT_SETTINGS,
) -> "Occurrences":
    """expand() with the constants taken from a RecurrenceSettings"""
    return expand(
        anchor_date,
        day_offset,
        policy,
        horizon_days=recurrence_settings.horizon_days,
        monthly_interval_days=recurrence_settings.monthly_interval_days,
    )
