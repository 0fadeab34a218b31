"""Per-source daily insert caps.

In-memory counters; a restart resets them, which is acceptable for a safety
limit. Counters roll over when the UTC date changes.
"""

from datetime import date, datetime, timezone
from typing import Callable, Dict, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class DailyCapTracker:
    """Counts inserted items per source per UTC day."""

    def __init__(
        self,
        default_cap: int = 500,
        caps: Optional[Mapping[str, int]] = None,
        today: Callable[[], date] = _utc_today,
    ):
        self.default_cap = default_cap
        self._caps: Dict[str, int] = dict(caps or {})
        self._today = today
        self._counts: Dict[str, int] = {}
        self._day = today()

    def set_cap(self, source_key: str, cap: int) -> None:
        self._caps[source_key] = cap

    def cap_for(self, source_key: str) -> int:
        return self._caps.get(source_key, self.default_cap)

    def _maybe_reset(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info(
                "daily_caps_reset",
                previous_day=self._day.isoformat(),
                counts=dict(self._counts),
            )
            self._counts.clear()
            self._day = today

    def allowed(self, source_key: str) -> bool:
        """True while the source is below its cap for today."""
        return self.remaining(source_key) > 0

    def remaining(self, source_key: str) -> int:
        self._maybe_reset()
        return max(0, self.cap_for(source_key) - self._counts.get(source_key, 0))

    def increment(self, source_key: str, amount: int = 1) -> int:
        """Record inserted items and return today's total for the source."""
        self._maybe_reset()
        total = self._counts.get(source_key, 0) + amount
        self._counts[source_key] = total
        cap = self.cap_for(source_key)
        if total >= cap:
            logger.warning("daily_cap_reached", source_key=source_key, count=total, cap=cap)
        return total

    def get_counts(self) -> Dict[str, int]:
        self._maybe_reset()
        return dict(self._counts)
