"""
Recurrence arithmetic for jobs that declare ``reoccur_in``.

``reoccur_in`` is either a decimal number of seconds (fixed interval, added to
the previous ``run_at`` so the schedule never drifts) or the name of a
calendar rule evaluated against the completion time.
"""

import calendar
import re
from datetime import date, datetime, timedelta
from enum import Enum

from jobqueue.core.clock import Clock, SystemClock
from jobqueue.core.exceptions import InvalidJobError

_SECONDS_RE = re.compile(r"^\d+$")


class RecurrenceRule(str, Enum):
    """Calendar rules a job can recur on."""

    LAST_OF_MONTH = "last_of_month"
    FIRST_OF_MONTH = "first_of_month"


def normalize_reoccur_in(value: int | timedelta | str | RecurrenceRule) -> str:
    """Convert a user-facing recurrence value to its stored string form."""
    if isinstance(value, RecurrenceRule):
        return value.value
    if isinstance(value, bool):
        raise InvalidJobError(f"Invalid recurrence: {value!r}")
    if isinstance(value, timedelta):
        value = int(value.total_seconds())
    if isinstance(value, int):
        if value < 0:
            raise InvalidJobError(f"Recurrence interval must not be negative, got {value}")
        return str(value)
    if isinstance(value, str):
        parse_reoccur_in(value)
        return value.strip()
    raise InvalidJobError(f"Invalid recurrence: {value!r}")


def parse_reoccur_in(reoccur_in: str) -> int | RecurrenceRule:
    """Return the interval in seconds or the calendar rule ``reoccur_in`` names."""
    text = reoccur_in.strip()
    if _SECONDS_RE.match(text):
        return int(text)
    try:
        return RecurrenceRule(text)
    except ValueError:
        raise InvalidJobError(
            f"Unknown recurrence '{reoccur_in}'; expected seconds or one of "
            f"{', '.join(rule.value for rule in RecurrenceRule)}"
        ) from None


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def _last_day(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _on_day(day: date, like: datetime) -> datetime:
    # keeps hour, minute, second, microsecond and tzinfo of ``like``
    return like.replace(year=day.year, month=day.month, day=day.day)


def next_run_at(reoccur_in: str, previous_run_at: datetime, now: datetime) -> datetime:
    """
    Compute the next ``run_at`` after a successful run.

    Fixed intervals are anniversary arithmetic on ``previous_run_at``.
    Calendar rules take the date from ``now`` and the time of day from
    ``previous_run_at``:

    - ``last_of_month``: last day of the current month, or of the following
      month when ``now`` is already on that day.
    - ``first_of_month``: first day of the month after ``now``.
    """
    rule = parse_reoccur_in(reoccur_in)
    if isinstance(rule, int):
        return previous_run_at + timedelta(seconds=rule)

    if previous_run_at.tzinfo is not None and now.tzinfo is not None:
        now = now.astimezone(previous_run_at.tzinfo)
    today = now.date()

    if rule is RecurrenceRule.LAST_OF_MONTH:
        candidate = _last_day(today.year, today.month)
        if today >= candidate:
            candidate = _last_day(*_next_month(today.year, today.month))
        return _on_day(candidate, previous_run_at)

    year, month = _next_month(today.year, today.month)
    return _on_day(date(year, month, 1), previous_run_at)


class RecurrenceEngine:
    """Schedules the next cycle of recurring jobs against an injectable clock."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()

    def schedule_next(
        self, reoccur_in: str, previous_run_at: datetime, completed_at: datetime | None = None
    ) -> datetime:
        return next_run_at(reoccur_in, previous_run_at, completed_at or self.clock.now())
