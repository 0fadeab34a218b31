"""Per-source circuit breaker for repeatedly failing sources."""

import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops running a source after too many failed cycles.

    CLOSED counts failures in a trailing monitor window and opens once
    ``failure_threshold`` is reached. OPEN rejects every cycle until
    ``reset_timeout_seconds`` have passed, then lets cycles through as
    HALF_OPEN. In HALF_OPEN one failure reopens the circuit and
    ``success_threshold`` consecutive successes close it.
    """

    def __init__(
        self,
        source_key: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 3600.0,
        success_threshold: int = 2,
        monitor_window_seconds: float = 21600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker.

        Args:
            source_key: Source the breaker guards (for logging)
            failure_threshold: Failures within the monitor window that open it
            reset_timeout_seconds: Time an open circuit waits before letting a cycle through
            success_threshold: Half-open successes needed to close it again
            monitor_window_seconds: Trailing window failures are counted in
            clock: Monotonic clock returning seconds, injectable for tests
        """
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("Circuit breaker thresholds must be >= 1")

        self.source_key = source_key
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.success_threshold = success_threshold
        self.monitor_window_seconds = monitor_window_seconds
        self._clock = clock

        self.state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._successes = 0
        self._opened_at: Optional[float] = None
        self._last_failure: Optional[float] = None
        self.logger = logger.bind(service="circuit_breaker", source_key=source_key)

    def _evict(self, now: float) -> None:
        horizon = now - self.monitor_window_seconds
        while self._failures and self._failures[0] <= horizon:
            self._failures.popleft()

    def can_execute(self) -> bool:
        """True if a cycle may run now; moves OPEN to HALF_OPEN after the timeout."""
        if self.state != CircuitState.OPEN:
            return True
        if self._clock() - self._opened_at >= self.reset_timeout_seconds:
            self.state = CircuitState.HALF_OPEN
            self._successes = 0
            self.logger.info("circuit_half_open")
            return True
        return False

    def seconds_until_retry(self) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.reset_timeout_seconds - self._clock())

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self._failures.clear()
                self._successes = 0
                self._opened_at = None
                self.logger.info("circuit_closed")
        else:
            self._evict(self._clock())

    def record_failure(self, error: Optional[str] = None) -> None:
        now = self._clock()
        self._evict(now)
        self._failures.append(now)
        self._last_failure = now

        if self.state == CircuitState.HALF_OPEN:
            self._open(now)
            self.logger.warning("circuit_reopened", error=error)
        elif self.state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
            self._open(now)
            self.logger.error(
                "circuit_opened",
                failures=len(self._failures),
                threshold=self.failure_threshold,
                error=error,
            )

    def _open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self._opened_at = now
        self._successes = 0

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for monitoring endpoints."""
        self._evict(self._clock())
        return {
            "state": self.state.value,
            "failures": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "retry_in_seconds": round(self.seconds_until_retry(), 1),
        }
