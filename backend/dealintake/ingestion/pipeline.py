"""Ingestion pipeline: fetch, normalize, deduplicate, insert.

This service connects a source's fetcher with the normalizer and the
deduplicating store. One call to ``run`` is one ingestion cycle for one
source.
"""

import asyncio
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from dealintake.config import Settings
from dealintake.core.exceptions import FetchError, PersistenceError
from dealintake.ingestion.base import BaseFetcher, RawCandidate
from dealintake.ingestion.deduplicator import Deduplicator
from dealintake.ingestion.normalizer import MAX_TITLE_LENGTH, MIN_TITLE_LENGTH, normalize
from dealintake.ingestion.registry import SourceDefinition
from dealintake.ingestion.utils.daily_cap import DailyCapTracker

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobStats:
    """Per-run item counts."""

    fetched: int = 0
    normalized: int = 0
    inserted: int = 0
    skipped: int = 0
    errored: int = 0
    capped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class JobResult:
    """Outcome of one ingestion cycle."""

    source_key: str
    status: str  # 'completed' or 'failed'
    stats: JobStats = field(default_factory=JobStats)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None
    error_traceback: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


class IngestionPipeline:
    """Runs one source's fetch → normalize → dedupe → insert cycle.

    Items of a batch are processed sequentially in fetcher order, so the
    first of two near-identical titles is the one that gets stored.
    """

    def __init__(
        self,
        deduplicator: Deduplicator,
        daily_caps: Optional[DailyCapTracker] = None,
        fetch_timeout: float = 60.0,
        min_title_length: int = MIN_TITLE_LENGTH,
        max_title_length: int = MAX_TITLE_LENGTH,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the pipeline.

        Args:
            deduplicator: Near-duplicate filter in front of the store
            daily_caps: Per-source daily insert caps (unlimited when None)
            fetch_timeout: Upper bound in seconds for one fetch, retries included
            min_title_length: Titles shorter than this fall back to the merchant
            max_title_length: Titles are truncated to this length
            clock: Source of creation timestamps
        """
        self.deduplicator = deduplicator
        self.daily_caps = daily_caps
        self.fetch_timeout = fetch_timeout
        self.min_title_length = min_title_length
        self.max_title_length = max_title_length
        self._clock = clock
        self.logger = logger.bind(service="ingestion_pipeline")

    @classmethod
    def from_settings(cls, deduplicator: Deduplicator, config: Settings) -> "IngestionPipeline":
        # Room for every retry attempt plus back-off on top of the per-request timeout
        fetch_timeout = config.HTTP_TIMEOUT_SECONDS * max(1, config.FETCH_MAX_ATTEMPTS) + 60
        return cls(
            deduplicator,
            daily_caps=DailyCapTracker(default_cap=config.DAILY_CAP_DEFAULT),
            fetch_timeout=fetch_timeout,
            min_title_length=config.MIN_TITLE_LENGTH,
            max_title_length=config.MAX_TITLE_LENGTH,
        )

    async def run(self, source: SourceDefinition, fetcher: BaseFetcher) -> JobResult:
        """Execute one cycle for ``source``.

        Fetch failures are logged and reported as a failed result; they never
        propagate. Item-level failures are counted and do not stop the batch.
        """
        result = JobResult(source_key=source.key, status="running", started_at=self._clock())
        started = time.monotonic()
        log = self.logger.bind(source_key=source.key)
        log.info("ingestion_job_started", source_type=source.type.value)

        try:
            candidates = await asyncio.wait_for(
                fetcher.fetch(source.config), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            error = FetchError(source.key, f"fetch exceeded {self.fetch_timeout:.0f}s")
            log.error("source_fetch_failed", error=str(error))
            return self._finish(result, started, "failed", error=str(error))
        except FetchError as e:
            log.error("source_fetch_failed", error=str(e))
            return self._finish(result, started, "failed", error=str(e))
        except Exception as e:
            log.error("source_fetch_crashed", error=str(e), exc_info=True)
            return self._finish(
                result, started, "failed", error=str(e), error_traceback=traceback.format_exc()
            )

        result.stats.fetched = len(candidates)
        await self.process_candidates(source, candidates, result.stats)
        self._finish(result, started, "completed")
        log.info("ingestion_job_completed", duration_seconds=result.duration_seconds, **result.stats.as_dict())
        return result

    async def process_candidates(
        self,
        source: SourceDefinition,
        candidates: Sequence[RawCandidate],
        stats: Optional[JobStats] = None,
    ) -> JobStats:
        """Normalize and insert ``candidates`` in order, updating ``stats``."""
        stats = stats or JobStats(fetched=len(candidates))
        if self.daily_caps is not None and source.daily_cap is not None:
            self.daily_caps.set_cap(source.key, source.daily_cap)

        for candidate in candidates:
            try:
                item = normalize(
                    candidate,
                    source.key,
                    content_kind=source.content_kind,
                    now=self._clock(),
                    min_title_length=self.min_title_length,
                    max_title_length=self.max_title_length,
                )
            except ValueError as e:
                self.logger.debug("candidate_dropped", source_key=source.key, reason=str(e))
                item = None
            if item is None:
                continue
            stats.normalized += 1

            if self.daily_caps is not None and not self.daily_caps.allowed(source.key):
                stats.capped += 1
                continue

            try:
                stored = await self.deduplicator.consider_for_insert(item)
            except PersistenceError as e:
                stats.errored += 1
                self.logger.error(
                    "deal_insert_failed", source_key=source.key, url=item.url, error=str(e)
                )
                continue
            except Exception as e:
                stats.errored += 1
                self.logger.error(
                    "deal_processing_crashed",
                    source_key=source.key,
                    url=item.url,
                    error=str(e),
                    exc_info=True,
                )
                continue

            if stored is None:
                stats.skipped += 1
            else:
                stats.inserted += 1
                if self.daily_caps is not None:
                    self.daily_caps.increment(source.key)

        if stats.capped:
            self.logger.warning("daily_cap_items_dropped", source_key=source.key, capped=stats.capped)
        return stats

    def _finish(
        self,
        result: JobResult,
        started: float,
        status: str,
        error: Optional[str] = None,
        error_traceback: Optional[str] = None,
    ) -> JobResult:
        result.status = status
        result.error = error
        result.error_traceback = error_traceback
        result.completed_at = self._clock()
        result.duration_seconds = round(time.monotonic() - started, 3)
        return result


def summarize(results: List[JobResult]) -> Dict[str, int]:
    """Totals over several job results, for logs and the operator CLI."""
    totals = JobStats()
    for result in results:
        for name, value in result.stats.as_dict().items():
            setattr(totals, name, getattr(totals, name) + value)
    return totals.as_dict()
