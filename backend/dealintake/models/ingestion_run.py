"""Ingestion run tracking and monitoring."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from dealintake.models.base import Base, UUIDPrimaryKeyMixin


class IngestionRun(UUIDPrimaryKeyMixin, Base):
    """Tracks execution of one source ingestion job.

    Each executed job creates an IngestionRun record holding its status,
    timing, per-item counts and the error that failed it, if any.
    """

    __tablename__ = "ingestion_runs"

    source_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="recurring",
        comment="Trigger: 'recurring' or 'manual'",
    )
    job_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="running",
        index=True,
        comment="Status: 'running', 'completed', 'failed'",
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)

    # Counts
    items_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_normalized: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_errored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_capped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Error tracking
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_traceback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<IngestionRun(id={self.id}, source_key='{self.source_key}', status='{self.status}')>"
