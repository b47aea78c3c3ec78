"""
Time source for every window the gate computes.

All timestamps are integer epoch milliseconds.
"""

import time
from typing import Protocol

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Clock(Protocol):
    def now_ms(self) -> int:
        ...


class SystemClock:
    """Wall-clock reads from the host."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class FakeClock:
    """
    Manually advanced clock for tests and replays.
    """

    def __init__(self, start_ms: int = 0):
        self._now_ms = start_ms

    def now_ms(self) -> int:
        return self._now_ms

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("clock cannot move backwards")
        self._now_ms += ms

    def set(self, now_ms: int) -> None:
        self._now_ms = now_ms
