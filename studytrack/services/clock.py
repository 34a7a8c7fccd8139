"""
Time source and calendar helpers.

Everything that needs "now" takes a clock instead of calling time.time()
directly, so elapsed-time math can be tested by moving a ManualClock forward
instead of sleeping.

Units: instants are epoch seconds (float); timer snapshots use epoch
milliseconds (int), see ``now_ms``.
"""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta, timezone


class SystemClock:
    """Wall clock."""

    def now(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return int(self.now() * 1000)

    def today(self) -> str:
        return local_date(self.now())

    def now_iso(self) -> str:
        return iso_from_epoch(self.now())


class ManualClock(SystemClock):
    """A clock that only moves when told to. Used by tests and the seeder."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def set(self, epoch_seconds: float) -> None:
        self._now = float(epoch_seconds)

    def advance(self, seconds: float) -> None:
        self._now += seconds


# ── Calendar helpers ────────────────────────────────────────────────────────

def iso_from_epoch(epoch_seconds: float) -> str:
    """UTC ISO-8601 string with millisecond precision."""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def local_date(epoch_seconds: float) -> str:
    """Local calendar date (YYYY-MM-DD) of an instant."""
    return datetime.fromtimestamp(epoch_seconds).date().isoformat()


def add_days(iso_date: str, days: int) -> str:
    return (date.fromisoformat(iso_date) + timedelta(days=days)).isoformat()


def day_diff(from_iso: str, to_iso: str) -> int:
    return (date.fromisoformat(to_iso) - date.fromisoformat(from_iso)).days


def end_of_day(iso_date: str) -> float:
    """Epoch seconds of 23:59:59 local time on the given date."""
    day = date.fromisoformat(iso_date)
    return datetime(day.year, day.month, day.day, 23, 59, 59).timestamp()


def start_of_day(iso_date: str) -> float:
    day = date.fromisoformat(iso_date)
    return datetime(day.year, day.month, day.day).timestamp()


def start_of_week(iso_date: str) -> str:
    """Monday of the week containing iso_date."""
    day = date.fromisoformat(iso_date)
    return (day - timedelta(days=day.weekday())).isoformat()


def start_of_month(iso_date: str) -> str:
    return date.fromisoformat(iso_date).replace(day=1).isoformat()


def add_months(iso_date: str, months: int) -> str:
    """First day of the month ``months`` away from iso_date's month."""
    day = date.fromisoformat(iso_date)
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1).isoformat()


def date_range(start_iso: str, end_iso: str) -> list:
    """Inclusive list of ISO dates from start to end."""
    days = day_diff(start_iso, end_iso)
    return [add_days(start_iso, offset) for offset in range(days + 1)]


def fmt_hms(seconds: int) -> str:
    """Format seconds as HH:MM:SS."""
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h:02}:{m:02}:{s:02}"
