"""
experiment_sdk.tier1_runtime.clock
───────────────────────────────────
Mockable time source. Every record timestamp (assigned_at, created_at,
updated_at, conversion timestamps) is epoch milliseconds read from a Clock,
so tests pin or step time without patching the datetime module.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Clock:
    """Wraps a datetime source; pass now_fn to control time."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or _utcnow

    def now(self) -> datetime:
        return self._now_fn()

    def timestamp_ms(self) -> int:
        """Epoch milliseconds, computed exactly (no float rounding)."""
        return (self.now() - _EPOCH) // _ONE_MS

    def freeze(self, dt: datetime) -> "Clock":
        """A new Clock stuck at dt."""
        return Clock(now_fn=lambda: dt)

    @classmethod
    def at_ms(cls, ms: int) -> "Clock":
        """A Clock stuck at an epoch-millisecond instant."""
        frozen = _EPOCH + ms * _ONE_MS
        return cls(now_fn=lambda: frozen)


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start_ms: int = 0) -> None:
        self._ms = start_ms
        super().__init__(now_fn=lambda: _EPOCH + self._ms * _ONE_MS)

    def advance(self, ms: int = 1) -> int:
        self._ms += ms
        return self._ms


_clock = Clock()


def get_clock() -> Clock:
    return _clock


def set_clock(clock: Clock) -> None:
    """Swap the process-wide clock (tests)."""
    global _clock
    _clock = clock


def timestamp_ms() -> int:
    return get_clock().timestamp_ms()


__all__ = ["Clock", "ManualClock", "get_clock", "set_clock", "timestamp_ms"]
