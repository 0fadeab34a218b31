"""Persistence collaborator for ingested deals.

The pipeline only needs four operations from the store: insert a canonical
item, look an item up by canonical URL, find recent items with similar
titles, and update a row. ``DealStore`` is that narrow interface;
``SqlAlchemyDealStore`` implements it on the ``deals`` table.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dealintake.core.exceptions import PersistenceError, UniqueViolation
from dealintake.ingestion.base import CanonicalItem
from dealintake.ingestion.utils.similarity import similarity
from dealintake.models.deal import Deal, DealStatus

logger = structlog.get_logger(__name__)


@dataclass
class PersistedItem:
    """A stored deal row as seen by the pipeline."""

    id: uuid.UUID
    title: str
    url: str
    source_key: str
    kind: str
    status: str
    created_at: datetime
    price: Optional[Decimal] = None
    merchant: Optional[str] = None
    image_url: Optional[str] = None
    submitter_note: Optional[str] = None

    @classmethod
    def from_model(cls, deal: Deal) -> "PersistedItem":
        return cls(
            id=deal.id,
            title=deal.title,
            url=deal.url,
            source_key=deal.source_key,
            kind=deal.kind,
            status=deal.status,
            created_at=deal.created_at,
            price=deal.price,
            merchant=deal.merchant,
            image_url=deal.image_url,
            submitter_note=deal.submitter_note,
        )


@dataclass
class SimilarMatch:
    """A stored item and its title similarity to the searched title."""

    item: PersistedItem
    similarity: float


class DealStore(ABC):
    """Narrow persistence interface used by the deduplicator."""

    @abstractmethod
    async def insert(self, item: CanonicalItem) -> PersistedItem:
        """Insert ``item`` with status pending.

        Raises:
            UniqueViolation: An item with the same (source_key, url) exists
            PersistenceError: Any other store failure
        """

    @abstractmethod
    async def find_by_url(self, url: str, kind: str = "deal") -> Optional[PersistedItem]:
        """Oldest stored item of ``kind`` with exactly this canonical URL,
        from any source."""

    @abstractmethod
    async def similarity_search(
        self,
        title: str,
        days_window: int,
        threshold: float,
        kind: str = "deal",
        limit: int = 5,
    ) -> List[SimilarMatch]:
        """Items of ``kind`` created within ``days_window`` days whose title
        similarity to ``title`` is at least ``threshold``, best first."""

    @abstractmethod
    async def update(self, item_id: uuid.UUID, **fields: Any) -> Optional[PersistedItem]:
        """Update columns of one row; returns None if it does not exist."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlAlchemyDealStore(DealStore):
    """DealStore on the async SQLAlchemy ``deals`` table.

    On PostgreSQL the similarity ranking runs in SQL through pg_trgm's
    ``similarity()``. Other dialects (SQLite in tests and local runs) load the
    window's rows and score them with the same trigram measure in Python.
    """

    UPDATABLE_FIELDS = frozenset(
        {"title", "url", "price", "merchant", "image_url", "submitter_note", "status"}
    )

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        use_pg_trgm: Optional[bool] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the store.

        Args:
            session_factory: Factory producing AsyncSessions
            use_pg_trgm: Force the SQL or Python similarity branch; detected
                from the engine dialect when None
            clock: Source of "now" for the similarity window
        """
        self.session_factory = session_factory
        self._use_pg_trgm = use_pg_trgm
        self._clock = clock
        self.logger = logger.bind(service="deal_store")

    def _pg_trgm_enabled(self, session: AsyncSession) -> bool:
        if self._use_pg_trgm is None:
            self._use_pg_trgm = session.bind.dialect.name == "postgresql"
        return self._use_pg_trgm

    async def insert(self, item: CanonicalItem) -> PersistedItem:
        deal = Deal(
            kind=item.kind,
            source_key=item.source_key,
            title=item.title,
            url=item.url,
            price=item.price,
            merchant=item.merchant,
            image_url=item.image_url,
            submitter_note=item.submitter_note,
            status=DealStatus.PENDING.value,
            created_at=item.created_at,
        )

        async with self.session_factory() as session:
            try:
                session.add(deal)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                message = str(e.orig).lower()
                if "unique" in message or "duplicate key" in message:
                    raise UniqueViolation(
                        f"Deal already exists for {item.source_key}: {item.url}"
                    ) from e
                raise PersistenceError(f"Integrity error inserting deal: {e.orig}") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Failed to insert deal: {e}") from e

        return PersistedItem.from_model(deal)

    async def find_by_url(self, url: str, kind: str = "deal") -> Optional[PersistedItem]:
        query = (
            select(Deal)
            .where(Deal.url == url, Deal.kind == kind)
            .order_by(Deal.created_at.asc())
            .limit(1)
        )
        try:
            async with self.session_factory() as session:
                deal = (await session.execute(query)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"URL lookup failed: {e}") from e
        return PersistedItem.from_model(deal) if deal is not None else None

    async def similarity_search(
        self,
        title: str,
        days_window: int,
        threshold: float,
        kind: str = "deal",
        limit: int = 5,
    ) -> List[SimilarMatch]:
        cutoff = self._clock() - timedelta(days=days_window)

        try:
            async with self.session_factory() as session:
                if self._pg_trgm_enabled(session):
                    return await self._search_pg_trgm(session, title, cutoff, threshold, kind, limit)
                return await self._search_python(session, title, cutoff, threshold, kind, limit)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Similarity search failed: {e}") from e

    async def _search_pg_trgm(
        self,
        session: AsyncSession,
        title: str,
        cutoff: datetime,
        threshold: float,
        kind: str,
        limit: int,
    ) -> List[SimilarMatch]:
        score = func.similarity(Deal.title, title).label("score")
        query = (
            select(Deal, score)
            .where(
                Deal.kind == kind,
                Deal.created_at >= cutoff,
                func.similarity(Deal.title, title) >= threshold,
            )
            .order_by(score.desc(), Deal.created_at.asc())
            .limit(limit)
        )
        result = await session.execute(query)
        return [
            SimilarMatch(item=PersistedItem.from_model(deal), similarity=float(value))
            for deal, value in result.all()
        ]

    async def _search_python(
        self,
        session: AsyncSession,
        title: str,
        cutoff: datetime,
        threshold: float,
        kind: str,
        limit: int,
    ) -> List[SimilarMatch]:
        query = (
            select(Deal)
            .where(Deal.kind == kind, Deal.created_at >= cutoff)
            .order_by(Deal.created_at.asc())
        )
        result = await session.execute(query)

        matches = []
        for deal in result.scalars().all():
            value = similarity(title, deal.title)
            if value >= threshold:
                matches.append(SimilarMatch(item=PersistedItem.from_model(deal), similarity=value))

        # Stable sort keeps the earliest row first among equal scores
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    async def update(self, item_id: uuid.UUID, **fields: Any) -> Optional[PersistedItem]:
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        async with self.session_factory() as session:
            try:
                deal = await session.get(Deal, item_id)
                if deal is None:
                    return None
                for name, value in fields.items():
                    setattr(deal, name, value)
                await session.commit()
                await session.refresh(deal)
            except IntegrityError as e:
                await session.rollback()
                raise UniqueViolation(f"Update of {item_id} conflicts: {e.orig}") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Failed to update deal {item_id}: {e}") from e

        self.logger.info("deal_updated", deal_id=str(item_id), fields=sorted(fields))
        return PersistedItem.from_model(deal)
