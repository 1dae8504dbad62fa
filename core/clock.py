"""Millisecond clocks — the engine never reads wall time directly."""

from __future__ import annotations

import time
from typing import Protocol

# ── Time units (epoch milliseconds) ──────────────────────────────────────────
SECOND_MS = 1_000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall-clock time as integer epoch milliseconds."""

    def now(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """A clock that only moves when told to. Used by tests and replays."""

    def __init__(self, now: int = 0):
        self._now = now

    def now(self) -> int:
        return self._now

    def set(self, now: int) -> None:
        self._now = now

    def advance(self, ms: int) -> int:
        self._now += ms
        return self._now
