"""
Time sources for the job engine.

Locking, selection, backoff and recurrence all ask a clock for "now" instead
of calling ``datetime.now`` directly, so tests can pin time without patching
globals.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time as an aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """A clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def advance(self, delta: timedelta) -> datetime:
        self.instant = self.instant + delta
        return self.instant
