"""Injectable sources of "now" for billing policy code."""

from datetime import date, datetime, timedelta, tzinfo, UTC
from typing import Protocol


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class Clock(Protocol):
    """Anything that can tell the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return now_utc()


class FrozenClock:
    """A clock that only moves when told to. Used for time-travel tests and replays."""

    def __init__(self, at: datetime):
        self._now = _ensure_utc(at)

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = _ensure_utc(at)

    def advance(self, **delta: float) -> datetime:
        """Move forward by a timedelta given as keyword arguments (days=3, hours=1...)."""
        self._now = self._now + timedelta(**delta)
        return self._now


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_date(value: datetime, tz: tzinfo = UTC) -> date:
    """Calendar date of ``value`` as seen in ``tz``."""
    return _ensure_utc(value).astimezone(tz).date()


def start_of_day(day: date, tz: tzinfo = UTC) -> datetime:
    """Midnight of ``day`` in ``tz``, returned in UTC."""
    return datetime(day.year, day.month, day.day, tzinfo=tz).astimezone(UTC)
