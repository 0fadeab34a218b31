"""Tests for the fetch -> normalize -> dedupe -> insert pipeline."""

import asyncio
from typing import Any, List, Mapping

import pytest

from conftest import InMemoryDealStore, make_source
from dealintake.core.exceptions import FetchError, PersistenceError
from dealintake.ingestion.base import BaseFetcher, RawCandidate, SourceType
from dealintake.ingestion.deduplicator import Deduplicator
from dealintake.ingestion.pipeline import IngestionPipeline, JobResult, JobStats, summarize
from dealintake.ingestion.utils.daily_cap import DailyCapTracker


def feed_candidate(title: str, link: str) -> RawCandidate:
    return RawCandidate(kind=SourceType.FEED, source_key="test_feed", payload={"title": title, "link": link})


class StaticFetcher(BaseFetcher):
    """Returns a fixed batch, or raises the configured error."""

    source_type = SourceType.FEED

    def __init__(self, candidates: List[RawCandidate] = None, error: Exception = None, delay: float = 0.0):
        super().__init__("test_feed")
        self.candidates = candidates or []
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.candidates)


@pytest.fixture
def pipeline(memory_store):
    return IngestionPipeline(Deduplicator(memory_store))


class TestIngestionPipeline:

    async def test_inserts_and_counts(self, pipeline, memory_store, feed_source):
        fetcher = StaticFetcher([
            feed_candidate("Samsung 65in QLED TV $497.99", "https://a.com/tv"),
            feed_candidate("Cordless Drill Kit with batteries", "https://a.com/drill"),
        ])

        result = await pipeline.run(feed_source, fetcher)

        assert result.status == "completed"
        assert result.succeeded
        assert result.stats.fetched == 2
        assert result.stats.inserted == 2
        assert result.completed_at is not None
        assert [i.title for i in memory_store.items] == ["Samsung 65in QLED TV", "Cordless Drill Kit with batteries"]

    async def test_first_of_near_duplicates_wins(self, pipeline, memory_store, feed_source):
        fetcher = StaticFetcher([
            feed_candidate("Widget Pro 50% off today", "https://a.com/1"),
            feed_candidate("Widget Pro 50% off today!!", "https://b.com/2"),
        ])

        result = await pipeline.run(feed_source, fetcher)

        assert result.stats.inserted == 1
        assert result.stats.skipped == 1
        assert memory_store.items[0].url == "https://a.com/1"

    async def test_unnormalizable_candidates_are_dropped(self, pipeline, memory_store, feed_source):
        fetcher = StaticFetcher([
            feed_candidate("No usable link here", "ftp://a.com/file"),
            feed_candidate("Good Deal Title Here", "https://a.com/ok"),
        ])

        result = await pipeline.run(feed_source, fetcher)

        assert result.stats.fetched == 2
        assert result.stats.normalized == 1
        assert result.stats.inserted == 1

    async def test_rerun_inserts_nothing_new(self, pipeline, memory_store, feed_source):
        fetcher = StaticFetcher([feed_candidate("Widget Pro 50% off", "https://a.com/1")])

        await pipeline.run(feed_source, fetcher)
        second = await pipeline.run(feed_source, fetcher)

        assert second.stats.inserted == 0
        assert second.stats.skipped == 1
        assert len(memory_store.items) == 1

    async def test_fetch_error_fails_job(self, pipeline, memory_store, feed_source):
        fetcher = StaticFetcher(error=FetchError("test_feed", "HTTP 503"))

        result = await pipeline.run(feed_source, fetcher)

        assert result.status == "failed"
        assert "HTTP 503" in result.error
        assert memory_store.items == []

    async def test_unexpected_error_fails_job_with_traceback(self, pipeline, feed_source):
        fetcher = StaticFetcher(error=RuntimeError("parser exploded"))

        result = await pipeline.run(feed_source, fetcher)

        assert result.status == "failed"
        assert "RuntimeError" in result.error_traceback

    async def test_fetch_timeout_fails_job(self, memory_store, feed_source):
        pipeline = IngestionPipeline(Deduplicator(memory_store), fetch_timeout=0.01)
        fetcher = StaticFetcher([feed_candidate("Widget Pro 50% off", "https://a.com/1")], delay=1.0)

        result = await pipeline.run(feed_source, fetcher)

        assert result.status == "failed"
        assert "exceeded" in result.error

    async def test_store_failure_counts_error_and_continues(self, feed_source):
        store = InMemoryDealStore()
        store.fail_with = PersistenceError("disk full")
        pipeline = IngestionPipeline(Deduplicator(store))
        fetcher = StaticFetcher([
            feed_candidate("Widget Pro 50% off", "https://a.com/1"),
            feed_candidate("Cordless Drill Kit with batteries", "https://a.com/2"),
        ])

        result = await pipeline.run(feed_source, fetcher)

        assert result.status == "completed"
        assert result.stats.errored == 2

    async def test_daily_cap(self, memory_store):
        source = make_source(daily_cap=1)
        pipeline = IngestionPipeline(Deduplicator(memory_store), daily_caps=DailyCapTracker(default_cap=100))
        fetcher = StaticFetcher([
            feed_candidate("Widget Pro 50% off", "https://a.com/1"),
            feed_candidate("Cordless Drill Kit with batteries", "https://a.com/2"),
        ])

        result = await pipeline.run(source, fetcher)

        assert result.stats.inserted == 1
        assert result.stats.capped == 1

    async def test_content_kind_is_stamped(self, pipeline, memory_store):
        source = make_source("coupons", content_kind="coupon")
        fetcher = StaticFetcher([feed_candidate("20% off sitewide coupon code", "https://a.com/c")])

        await pipeline.run(source, fetcher)

        assert memory_store.items[0].kind == "coupon"
        assert memory_store.items[0].source_key == "coupons"


def test_summarize():
    results = [
        JobResult(source_key="a", status="completed", stats=JobStats(fetched=3, inserted=2, skipped=1)),
        JobResult(source_key="b", status="failed"),
        JobResult(source_key="c", status="completed", stats=JobStats(fetched=1, inserted=1)),
    ]

    totals = summarize(results)

    assert totals["fetched"] == 4
    assert totals["inserted"] == 3
    assert totals["skipped"] == 1
    assert totals["errored"] == 0
