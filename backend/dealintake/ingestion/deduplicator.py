"""Near-duplicate filtering in front of the deal store."""

from dataclasses import dataclass
from typing import Optional

import structlog

from dealintake.config import Settings
from dealintake.core.exceptions import ConfigError, UniqueViolation
from dealintake.ingestion.base import CanonicalItem
from dealintake.services.deal_store import DealStore, PersistedItem

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DedupPolicy:
    """Similarity window and thresholds.

    Matches at or above ``discovery_threshold`` are looked up and logged;
    only matches at or above ``acceptance_threshold`` suppress the insert.
    """

    window_days: int = 7
    discovery_threshold: float = 0.55
    acceptance_threshold: float = 0.6

    def __post_init__(self):
        if self.window_days < 1:
            raise ConfigError("Dedup window must be at least one day")
        if not 0.0 <= self.discovery_threshold <= self.acceptance_threshold <= 1.0:
            raise ConfigError(
                "Dedup thresholds must satisfy 0 <= discovery <= acceptance <= 1"
            )

    @classmethod
    def from_settings(cls, config: Settings) -> "DedupPolicy":
        return cls(
            window_days=config.DEDUP_WINDOW_DAYS,
            discovery_threshold=config.DEDUP_DISCOVERY_THRESHOLD,
            acceptance_threshold=config.DEDUP_ACCEPTANCE_THRESHOLD,
        )


class Deduplicator:
    """Decides whether a canonical item is inserted or skipped."""

    def __init__(self, store: DealStore, policy: Optional[DedupPolicy] = None):
        self.store = store
        self.policy = policy or DedupPolicy()
        self.logger = logger.bind(service="deduplicator")

    async def consider_for_insert(self, item: CanonicalItem) -> Optional[PersistedItem]:
        """Insert ``item`` unless it is already stored.

        An item is already stored when any source has the same canonical URL
        (regardless of age), or when a recent item has a near-identical title.

        Returns:
            The stored item, or None when the item was skipped as a URL or
            near-duplicate, or already existed with the same (source, url)

        Raises:
            PersistenceError: Any store failure other than a uniqueness conflict
        """
        existing = await self.store.find_by_url(item.url, kind=item.kind)
        if existing is not None:
            self.logger.info(
                "url_duplicate_skipped",
                source_key=item.source_key,
                url=item.url,
                matched_id=str(existing.id),
                matched_source_key=existing.source_key,
            )
            return None

        matches = await self.store.similarity_search(
            item.title,
            days_window=self.policy.window_days,
            threshold=self.policy.discovery_threshold,
            kind=item.kind,
            limit=1,
        )

        if matches:
            best = matches[0]
            if best.similarity >= self.policy.acceptance_threshold:
                self.logger.info(
                    "near_duplicate_skipped",
                    source_key=item.source_key,
                    title=item.title,
                    matched_id=str(best.item.id),
                    matched_title=best.item.title,
                    similarity=round(best.similarity, 4),
                )
                return None

            self.logger.info(
                "near_duplicate_close_call",
                source_key=item.source_key,
                title=item.title,
                matched_id=str(best.item.id),
                similarity=round(best.similarity, 4),
            )

        try:
            stored = await self.store.insert(item)
        except UniqueViolation:
            self.logger.debug("duplicate_url_ignored", source_key=item.source_key, url=item.url)
            return None

        self.logger.debug("deal_inserted", source_key=item.source_key, deal_id=str(stored.id))
        return stored
