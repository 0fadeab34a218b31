"""Pytest configuration and shared fixtures."""

import os

# Must be set before dealintake.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["ENVIRONMENT"] = "test"

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dealintake.core.exceptions import UniqueViolation
from dealintake.ingestion.base import CanonicalItem, SourceType
from dealintake.ingestion.registry import RateLimitSpec, SourceDefinition
from dealintake.ingestion.utils.similarity import similarity
from dealintake.models import Base
from dealintake.services.deal_store import DealStore, PersistedItem, SimilarMatch


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database shared across sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryDealStore(DealStore):
    """DealStore kept in a list, scoring titles with the trigram measure."""

    def __init__(self, now: Optional[datetime] = None):
        self.items: List[PersistedItem] = []
        self.now = now or datetime.now(timezone.utc)
        self.fail_with: Optional[Exception] = None

    async def insert(self, item: CanonicalItem) -> PersistedItem:
        if self.fail_with is not None:
            raise self.fail_with
        for existing in self.items:
            if existing.source_key == item.source_key and existing.url == item.url:
                raise UniqueViolation(f"Deal already exists: {item.url}")
        stored = PersistedItem(
            id=uuid.uuid4(),
            title=item.title,
            url=item.url,
            source_key=item.source_key,
            kind=item.kind,
            status="pending",
            created_at=item.created_at,
            price=item.price,
            merchant=item.merchant,
            image_url=item.image_url,
            submitter_note=item.submitter_note,
        )
        self.items.append(stored)
        return stored

    async def find_by_url(self, url: str, kind: str = "deal") -> Optional[PersistedItem]:
        if self.fail_with is not None:
            raise self.fail_with
        for stored in self.items:
            if stored.url == url and stored.kind == kind:
                return stored
        return None

    async def similarity_search(
        self,
        title: str,
        days_window: int,
        threshold: float,
        kind: str = "deal",
        limit: int = 5,
    ) -> List[SimilarMatch]:
        cutoff = self.now - timedelta(days=days_window)
        matches = []
        for stored in self.items:
            if stored.kind != kind or stored.created_at < cutoff:
                continue
            value = similarity(title, stored.title)
            if value >= threshold:
                matches.append(SimilarMatch(item=stored, similarity=value))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    async def update(self, item_id: uuid.UUID, **fields: Any) -> Optional[PersistedItem]:
        for stored in self.items:
            if stored.id == item_id:
                for name, value in fields.items():
                    setattr(stored, name, value)
                return stored
        return None


@pytest.fixture
def memory_store() -> InMemoryDealStore:
    return InMemoryDealStore()


# ============================================================================
# SOURCES
# ============================================================================

def make_source(key: str = "test_feed", **overrides: Any) -> SourceDefinition:
    """A valid SourceDefinition with test-friendly defaults."""
    values = dict(
        key=key,
        type=SourceType.FEED,
        enabled=True,
        priority=1,
        schedule="*/15 * * * *",
        rate_limit=RateLimitSpec(max_requests=10, window_ms=60_000),
        config={"feed_url": "https://feeds.example.com/deals.rss"},
    )
    values.update(overrides)
    return SourceDefinition(**values)


@pytest.fixture
def feed_source() -> SourceDefinition:
    return make_source()


@pytest.fixture
def inbound_source() -> SourceDefinition:
    return make_source(
        "test_inbound",
        type=SourceType.INBOUND,
        schedule=None,
        priority=5,
        config={"allowed_channels": ("hotdeals",)},
    )
