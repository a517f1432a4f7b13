"""
Occurrence dates of a (possibly recurring) shift inside a date window.

Occurrences are a read-time projection: nothing here creates Shift
records. A series never produces dates before the shift's own start date.
"""

import calendar
from collections.abc import Iterator
from datetime import date, datetime, timedelta

from care_scheduler.models import MonthlyRecurrence, Shift, WeeklyRecurrence


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


class Occurrences:
    """
    Lazy, finite and restartable: every iteration recomputes the dates from
    the shift and the window, so iterating twice yields the same sequence.
    """

    def __init__(
        self, shift: Shift, window_start: date | datetime, window_end: date | datetime
    ) -> None:
        self.shift = shift
        self.window_start = _as_date(window_start)
        self.window_end = _as_date(window_end)

    def __iter__(self) -> Iterator[date]:
        origin = self.shift.start_time.date()
        start = max(self.window_start, origin)
        end = self.window_end
        if start > end:
            return iter(())
        recurrence = self.shift.recurrence
        if isinstance(recurrence, WeeklyRecurrence):
            return _weekly(origin, start, end)
        if isinstance(recurrence, MonthlyRecurrence):
            return _monthly(recurrence.day_of_month or origin.day, start, end)
        return iter((origin,) if start <= origin <= end else ())

    def __repr__(self) -> str:
        return (
            f"Occurrences(shift={self.shift.id!r}, "
            f"{self.window_start.isoformat()}..{self.window_end.isoformat()})"
        )


def expand(
    shift: Shift, window_start: date | datetime, window_end: date | datetime
) -> Occurrences:
    return Occurrences(shift, window_start, window_end)


def _weekly(origin: date, start: date, end: date) -> Iterator[date]:
    current = start + timedelta(days=(origin.weekday() - start.weekday()) % 7)
    while current <= end:
        yield current
        current += timedelta(days=7)


def _monthly(day_of_month: int, start: date, end: date) -> Iterator[date]:
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        last_day = calendar.monthrange(year, month)[1]
        candidate = date(year, month, min(day_of_month, last_day))
        if start <= candidate <= end:
            yield candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


def occurrence_times(shift: Shift, day: date) -> tuple[datetime, datetime]:
    """Start and end of ``shift`` projected onto ``day``, keeping its duration."""
    start = datetime.combine(day, shift.start_time.timetz())
    return start, start + shift.duration
