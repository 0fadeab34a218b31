"""Tests for ingestion utilities: rate limiting, daily caps, proxies, similarity."""

from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from dealintake.config import Settings
from dealintake.ingestion.catalog import default_sources
from dealintake.ingestion.utils import (
    CircuitBreaker,
    CircuitState,
    DailyCapTracker,
    ProxyManager,
    SlidingWindowRateLimiter,
    browser_headers,
    is_retryable_http_error,
    similarity,
    trigrams,
)


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# RATE LIMITER
# ============================================================================

class TestSlidingWindowRateLimiter:

    def test_grants_up_to_limit_then_denies(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=3, window_ms=1000, clock=clock)

        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert limiter.remaining() == 0

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=1000, clock=clock)

        assert limiter.try_acquire()
        clock.advance(0.5)
        assert limiter.try_acquire()
        clock.advance(0.25)
        assert not limiter.try_acquire()

        # The first grant leaves the window exactly one window after it was made
        clock.advance(0.25)
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

    def test_never_more_than_max_in_any_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=5, window_ms=2000, clock=clock)

        granted = []
        for _ in range(200):
            if limiter.try_acquire():
                granted.append(clock.now)
            clock.advance(0.07)

        for t in granted:
            in_window = [g for g in granted if t <= g < t + 2.0]
            assert len(in_window) <= 5

    def test_denied_acquire_does_not_consume(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=1, window_ms=1000, clock=clock)

        assert limiter.try_acquire()
        for _ in range(10):
            assert not limiter.try_acquire()
        clock.advance(1.0)
        assert limiter.try_acquire()

    def test_seconds_until_available(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=1, window_ms=10_000, clock=clock)

        assert limiter.seconds_until_available() == 0.0
        limiter.try_acquire()
        clock.advance(4.0)
        assert limiter.seconds_until_available() == pytest.approx(6.0)

    def test_status_snapshot(self):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=500, clock=FakeClock())
        limiter.try_acquire()

        status = limiter.get_status()

        assert status["max_requests"] == 2
        assert status["window_ms"] == 500
        assert status["remaining"] == 1
        assert status["retry_after_seconds"] == 0.0

    @pytest.mark.parametrize("max_requests,window_ms", [(0, 1000), (1, 0), (-1, 5)])
    def test_rejects_invalid_arguments(self, max_requests, window_ms):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests=max_requests, window_ms=window_ms)

    @pytest.mark.parametrize("source_key", ["slickdeals_rss", "slickdeals_coupons", "dealnews_rss"])
    def test_jittered_cron_ticks_are_all_granted(self, source_key):
        spec = next(s for s in default_sources(Settings()) if s.key == source_key).rate_limit
        period = {"slickdeals_rss": 1200.0, "slickdeals_coupons": 1200.0, "dealnews_rss": 900.0}[source_key]
        clock = FakeClock(start=0.0)
        limiter = SlidingWindowRateLimiter(max_requests=spec.max_requests, window_ms=spec.window_ms, clock=clock)

        # A late tick followed by an early one is the tightest pair
        granted = []
        for tick in range(12):
            clock.now = tick * period + (5.0 if tick % 2 == 0 else 0.05)
            granted.append(limiter.try_acquire())

        assert all(granted)

    def test_second_request_inside_window_still_denied(self):
        spec = next(s for s in default_sources(Settings()) if s.key == "slickdeals_rss").rate_limit
        clock = FakeClock(start=0.0)
        limiter = SlidingWindowRateLimiter(max_requests=spec.max_requests, window_ms=spec.window_ms, clock=clock)

        assert limiter.try_acquire()
        clock.advance(600.0)
        assert not limiter.try_acquire()


# ============================================================================
# DAILY CAP
# ============================================================================

class TestDailyCapTracker:

    def test_cap_blocks_after_limit(self):
        tracker = DailyCapTracker(default_cap=2)

        assert tracker.allowed("src")
        tracker.increment("src")
        tracker.increment("src")
        assert not tracker.allowed("src")
        assert tracker.remaining("src") == 0

    def test_per_source_caps(self):
        tracker = DailyCapTracker(default_cap=10, caps={"small": 1})

        tracker.increment("small")
        tracker.increment("big")

        assert not tracker.allowed("small")
        assert tracker.allowed("big")
        assert tracker.cap_for("big") == 10

    def test_resets_on_new_utc_day(self):
        days = iter([date(2026, 1, 1), date(2026, 1, 1), date(2026, 1, 1), date(2026, 1, 2)])
        current = {"day": None}

        def today():
            current["day"] = next(days, current["day"])
            return current["day"]

        tracker = DailyCapTracker(default_cap=1, today=today)
        tracker.increment("src")
        assert not tracker.allowed("src")
        assert tracker.allowed("src")
        assert tracker.get_counts() == {}


# ============================================================================
# PROXY MANAGER
# ============================================================================

class TestProxyManager:

    def test_empty_pool(self):
        manager = ProxyManager([])
        assert not manager
        assert manager.get_proxy() is None

    def test_round_robin(self):
        manager = ProxyManager(["http://p1:8080", "http://p2:8080"])
        assert [manager.get_proxy() for _ in range(4)] == [
            "http://p1:8080",
            "http://p2:8080",
            "http://p1:8080",
            "http://p2:8080",
        ]

    def test_unhealthy_proxy_is_skipped_until_cooldown(self):
        now = {"t": datetime(2026, 1, 1, tzinfo=timezone.utc)}
        manager = ProxyManager(
            ["http://p1:8080", "http://p2:8080"],
            cooldown_minutes=10,
            max_failures=2,
            clock=lambda: now["t"],
        )

        manager.mark_failed("http://p1:8080")
        manager.mark_failed("http://p1:8080")

        assert manager.get_stats()["unhealthy_proxies"] == 1
        assert {manager.get_proxy() for _ in range(3)} == {"http://p2:8080"}

        now["t"] += timedelta(minutes=11)
        assert "http://p1:8080" in {manager.get_proxy() for _ in range(3)}

    def test_success_restores_health(self):
        manager = ProxyManager(["http://p1:8080"], max_failures=1)
        manager.mark_failed("http://p1:8080")
        manager.mark_success("http://p1:8080")

        assert manager.get_stats()["healthy_proxies"] == 1

    def test_exhausted_pool_resets(self):
        manager = ProxyManager(["http://p1:8080"], max_failures=1)
        manager.mark_failed("http://p1:8080")

        assert manager.get_proxy() == "http://p1:8080"
        assert manager.get_stats()["healthy_proxies"] == 1

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            ProxyManager(["http://p1:8080"], strategy="weighted")


# ============================================================================
# TRIGRAM SIMILARITY
# ============================================================================

class TestSimilarity:

    def test_trigrams_match_pg_trgm_padding(self):
        assert trigrams("Cat") == {"  c", " ca", "cat", "at "}

    def test_identical_titles(self):
        assert similarity("Widget Pro 50% off", "widget pro 50% OFF") == 1.0

    def test_known_value(self):
        # pg_trgm: similarity('word', 'words') = 0.571429
        assert similarity("word", "words") == pytest.approx(4 / 7)

    def test_unrelated_titles(self):
        assert similarity("Samsung QLED TV", "Running shoes") < 0.1

    def test_empty_titles(self):
        assert similarity("", "anything") == 0.0
        assert similarity("!!!", "???") == 0.0

    def test_symmetric(self):
        a, b = "Apple AirPods Pro 2 $189", "AirPods Pro (2nd gen) $189.99"
        assert similarity(a, b) == similarity(b, a)


# ============================================================================
# HTTP HELPERS
# ============================================================================

class TestHttpHelpers:

    def _status_error(self, code: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "https://example.com")
        response = httpx.Response(code, request=request)
        return httpx.HTTPStatusError("boom", request=request, response=response)

    @pytest.mark.parametrize("code", [429, 500, 503])
    def test_transient_statuses_retry(self, code):
        assert is_retryable_http_error(self._status_error(code))

    @pytest.mark.parametrize("code", [400, 401, 403, 404])
    def test_client_errors_are_final(self, code):
        assert not is_retryable_http_error(self._status_error(code))

    def test_transport_errors_retry(self):
        assert is_retryable_http_error(httpx.ConnectError("refused"))
        assert not is_retryable_http_error(ValueError("nope"))

    def test_browser_headers(self):
        headers = browser_headers("TestAgent/1.0")
        assert headers["User-Agent"] == "TestAgent/1.0"
        assert "Accept" in headers


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class TestCircuitBreaker:

    def make_breaker(self, clock, **overrides):
        values = dict(
            failure_threshold=3,
            reset_timeout_seconds=60.0,
            success_threshold=2,
            monitor_window_seconds=300.0,
            clock=clock,
        )
        values.update(overrides)
        return CircuitBreaker("src", **values)

    def test_opens_at_failure_threshold(self):
        breaker = self.make_breaker(FakeClock())

        breaker.record_failure("HTTP 500")
        breaker.record_failure("HTTP 500")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.can_execute()

        breaker.record_failure("HTTP 500")
        assert breaker.state == CircuitState.OPEN
        assert not breaker.can_execute()

    def test_failures_outside_monitor_window_are_forgotten(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)

        breaker.record_failure()
        breaker.record_failure()
        clock.advance(301.0)
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["failures"] == 1

    def test_half_open_after_reset_timeout(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        breaker.record_failure()

        clock.advance(30.0)
        assert not breaker.can_execute()
        assert breaker.seconds_until_retry() == pytest.approx(30.0)

        clock.advance(30.0)
        assert breaker.can_execute()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_failure_while_half_open_reopens(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        breaker.record_failure()
        clock.advance(60.0)
        assert breaker.can_execute()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.seconds_until_retry() == pytest.approx(60.0)

    def test_successes_while_half_open_close(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        breaker.record_failure()
        clock.advance(60.0)
        breaker.can_execute()

        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["failures"] == 0

    def test_success_while_closed_does_not_reset_failures(self):
        breaker = self.make_breaker(FakeClock())
        breaker.record_failure()
        breaker.record_failure()

        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_status_snapshot(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        breaker.record_failure("boom")
        clock.advance(15.0)

        status = breaker.get_status()

        assert status["state"] == "open"
        assert status["failures"] == 1
        assert status["failure_threshold"] == 1
        assert status["retry_in_seconds"] == 45.0

    @pytest.mark.parametrize("kwargs", [{"failure_threshold": 0}, {"success_threshold": 0}])
    def test_rejects_invalid_thresholds(self, kwargs):
        with pytest.raises(ValueError):
            CircuitBreaker("src", **kwargs)
