"""Injectable time source for period boundaries, proration and trial expiry."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone as dt_timezone

from django.utils import timezone


class Clock:
    """Interface: ``now()`` returns an aware ``datetime``."""

    def now(self) -> datetime:  # pragma: no cover - interface
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return timezone.now()


class FixedClock(Clock):
    """Clock frozen at a given instant; tests move it with :meth:`advance`."""

    def __init__(self, instant: datetime) -> None:
        if timezone.is_naive(instant):
            instant = timezone.make_aware(instant, dt_timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = instant

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    return _default_clock
