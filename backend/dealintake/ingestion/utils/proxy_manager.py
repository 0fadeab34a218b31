"""Proxy pool for scraper sources, rotating over healthy entries."""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProxyEntry:
    """One proxy URL and its recent health record."""

    url: str
    healthy: bool = True
    consecutive_failures: int = 0
    successes: int = 0
    failures: int = 0
    last_failed: Optional[datetime] = None

    def record_failure(self, now: datetime, max_failures: int) -> None:
        self.failures += 1
        self.consecutive_failures += 1
        self.last_failed = now
        if self.consecutive_failures >= max_failures:
            self.healthy = False

    def record_success(self) -> None:
        self.successes += 1
        self.consecutive_failures = 0
        self.healthy = True

    def usable(self, now: datetime, cooldown: timedelta) -> bool:
        """Healthy, or unhealthy long enough ago to deserve another try."""
        if self.healthy or self.last_failed is None:
            return True
        return now - self.last_failed > cooldown


class ProxyManager:
    """Hands out proxies in rotation, skipping ones that keep failing.

    An entry goes unhealthy after ``max_failures`` consecutive failures and is
    offered again once ``cooldown_minutes`` have passed. When every entry is
    cooling down the whole pool is reset rather than scraping without a proxy.
    """

    def __init__(
        self,
        proxy_urls: List[str],
        strategy: str = "round-robin",
        cooldown_minutes: int = 10,
        max_failures: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if strategy not in ("round-robin", "random"):
            raise ValueError(f"Unknown proxy strategy: {strategy}")
        self.entries = [ProxyEntry(url=url) for url in dict.fromkeys(proxy_urls)]
        self.strategy = strategy
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.max_failures = max_failures
        self._clock = clock
        self._cursor = 0

    def __bool__(self) -> bool:
        return bool(self.entries)

    def _find(self, proxy_url: str) -> Optional[ProxyEntry]:
        return next((e for e in self.entries if e.url == proxy_url), None)

    def get_proxy(self) -> Optional[str]:
        """Next proxy URL, or None when the pool is empty."""
        if not self.entries:
            return None

        now = self._clock()
        candidates = [e for e in self.entries if e.usable(now, self.cooldown)]
        if not candidates:
            logger.warning("proxy_pool_exhausted", size=len(self.entries))
            for entry in self.entries:
                entry.healthy = True
                entry.consecutive_failures = 0
            candidates = self.entries

        if self.strategy == "random":
            return random.choice(candidates).url

        entry = candidates[self._cursor % len(candidates)]
        self._cursor = (self._cursor + 1) % len(candidates)
        return entry.url

    def mark_failed(self, proxy_url: str) -> None:
        entry = self._find(proxy_url)
        if entry is None:
            return
        entry.record_failure(self._clock(), self.max_failures)
        if not entry.healthy:
            logger.warning(
                "proxy_marked_unhealthy",
                proxy=proxy_url,
                consecutive_failures=entry.consecutive_failures,
            )

    def mark_success(self, proxy_url: str) -> None:
        entry = self._find(proxy_url)
        if entry is not None:
            entry.record_success()

    def get_stats(self) -> Dict[str, int]:
        healthy = sum(1 for e in self.entries if e.healthy)
        return {
            "total_proxies": len(self.entries),
            "healthy_proxies": healthy,
            "unhealthy_proxies": len(self.entries) - healthy,
        }
