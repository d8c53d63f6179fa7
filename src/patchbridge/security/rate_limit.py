from __future__ import annotations

"""Simple in-memory rate limiting primitives."""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict


@dataclass
class _RateLimitEntry:
    count: int
    window_end: float


class SlidingWindowLimiter:
    """Fixed-length request window per key, restarted on the first hit after it ends.

    The clock is injectable so tests can step across a window boundary
    without sleeping.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._entries: Dict[str, _RateLimitEntry] = {}
        self._lock = Lock()

    def hit(self, key: str) -> bool:
        """Record one request for ``key`` and return whether it is admitted."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_end:
                self._entries[key] = _RateLimitEntry(count=1, window_end=now + self.window_seconds)
                return True
            if entry.count >= self.max_requests:
                return False
            entry.count += 1
            return True

    def count(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.count if entry else 0

    def retry_after(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_end:
                return 0
            return max(int(entry.window_end - now), 1)

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Clear in-memory counters (useful for tests)."""

        with self._lock:
            self._entries.clear()
