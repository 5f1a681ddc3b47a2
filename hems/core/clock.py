"""
Server clock used by every time-dependent decision.

All instants are naive UTC so they compare cleanly with values read back
from the database.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Clock that only moves when told to. Used by tests and replay tooling."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def get_clock() -> Clock:
    return utcnow
