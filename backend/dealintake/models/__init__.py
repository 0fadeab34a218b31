"""ORM models for the ingestion worker."""

from dealintake.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from dealintake.models.deal import Deal, DealStatus
from dealintake.models.ingestion_run import IngestionRun

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Deal",
    "DealStatus",
    "IngestionRun",
]
