"""Sliding-window rate limiter for per-source request throttling."""

import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """Sliding-log rate limiter.

    Keeps the timestamps of granted acquisitions and grants a new one only if
    fewer than ``max_requests`` were granted in the trailing ``window_ms``.
    Across any window-length interval at most ``max_requests`` acquisitions
    succeed.

    ``try_acquire`` never waits. A denied caller is expected to drop the
    current cycle and try again on the next scheduled tick.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            max_requests: Acquisitions allowed per window (must be >= 1)
            window_ms: Window length in milliseconds (must be >= 1)
            clock: Monotonic clock returning seconds, injectable for tests
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        self.max_requests = max_requests
        self.window_ms = window_ms
        self._window_seconds = window_ms / 1000.0
        self._clock = clock
        self._granted: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        """Drop grants that fell out of the trailing window."""
        horizon = now - self._window_seconds
        while self._granted and self._granted[0] <= horizon:
            self._granted.popleft()

    def try_acquire(self) -> bool:
        """Grant one acquisition if the window has room.

        There is no await between the check and the append, so on a single
        event loop this is atomic.

        Returns:
            True if granted, False if the caller must defer
        """
        now = self._clock()
        self._evict(now)
        if len(self._granted) >= self.max_requests:
            return False
        self._granted.append(now)
        return True

    def remaining(self) -> int:
        """Acquisitions still available in the current window."""
        self._evict(self._clock())
        return self.max_requests - len(self._granted)

    def seconds_until_available(self) -> float:
        """Seconds until the next acquisition would be granted (0 if now)."""
        now = self._clock()
        self._evict(now)
        if len(self._granted) < self.max_requests:
            return 0.0
        return max(0.0, self._granted[0] + self._window_seconds - now)

    def get_status(self) -> Dict[str, float]:
        """Snapshot for monitoring endpoints."""
        return {
            "max_requests": self.max_requests,
            "window_ms": self.window_ms,
            "remaining": self.remaining(),
            "retry_after_seconds": round(self.seconds_until_available(), 3),
        }
