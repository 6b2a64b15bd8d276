"""Fixed-rate loop pacing on a monotonic clock."""

from __future__ import annotations

import time
from typing import Callable


class Rate:
    """
    Sleep until the next tick of a fixed-period loop.

    A loop that falls more than one period behind restarts its schedule from
    the current time instead of running a burst of late ticks.
    """

    def __init__(self, hz: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if hz <= 0:
            raise ValueError(f"rate must be positive, got {hz}")
        self.period = 1.0 / hz
        self.clock = clock
        self._sleep = sleep
        self.last = clock()
        self.next = self.last + self.period

    def sleep(self) -> float:
        """Block until the next tick; return seconds since the previous one."""
        now = self.clock()
        if now < self.next:
            self._sleep(self.next - now)
            now = self.clock()
        elif now - self.next > self.period:
            self.next = now
        dt = now - self.last
        self.last = now
        self.next += self.period
        return dt
