from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """Thread-safe request spacing for calls to the reasoning oracle.

    acquire() reserves the next slot under the configured QPS and sleeps
    until it arrives. With a `max_wait`, a slot further away than that is
    not reserved and acquire() returns False instead of sleeping, so a
    goal near its deadline does not block on the limiter."""

    def __init__(
        self,
        qps: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interval = 1.0 / qps if qps > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    def acquire(self, max_wait: Optional[float] = None) -> bool:
        if self._interval <= 0:
            return True
        with self._lock:
            now = self._clock()
            wait = max(0.0, self._next_allowed - now)
            if max_wait is not None and wait > max_wait:
                return False
            self._next_allowed = max(self._next_allowed, now) + self._interval
        if wait:
            self._sleep(wait)
        return True
