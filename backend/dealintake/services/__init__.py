"""Persistence services used by the ingestion pipeline and scheduler."""

from dealintake.services.deal_store import DealStore, PersistedItem, SimilarMatch, SqlAlchemyDealStore

__all__ = [
    "DealStore",
    "PersistedItem",
    "SimilarMatch",
    "SqlAlchemyDealStore",
]
