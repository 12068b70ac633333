from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from ..errors import RateLimitExceeded


class SlidingWindowRateLimiter:
    """Admits at most *limit* calls in any rolling *window_seconds* interval.

    Callers over the limit are rejected with a retry-after hint instead of
    being queued.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            if len(self._calls) >= self.limit:
                retry_after = self._calls[0] + self.window_seconds - now
                raise RateLimitExceeded(
                    f"Rate limit of {self.limit} calls per {self.window_seconds:g}s exceeded. "
                    f"Try again in {retry_after:.0f} seconds.",
                    retry_after_seconds=retry_after,
                )
            self._calls.append(now)

    def in_window(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._calls)
