"""Time sources.

Every expiry comparison in the service layer goes through a ``Clock`` so tests
can pin "now" instead of sleeping. Datetimes are naive UTC throughout, matching
how timestamps are persisted.
"""
from datetime import datetime, timedelta, timezone


def to_iso(value: datetime) -> str:
    """Fixed-width ISO string, so stored timestamps sort lexically by time."""
    return value.isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Clock:
    """System UTC clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def now_iso(self) -> str:
        return to_iso(self.now())


class FrozenClock(Clock):
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value
