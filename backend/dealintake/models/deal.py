"""Deal model: the pending-review queue fed by ingestion."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dealintake.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class DealStatus(str, Enum):
    """Review status. Ingestion only ever writes PENDING."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Deal(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A deal or coupon ingested from an external source.

    Rows are created with status ``pending``; approval and rejection belong to
    the reviewer workflow, not to this worker.
    """

    __tablename__ = "deals"

    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="deal",
        comment="Content kind: 'deal' or 'coupon'",
    )
    source_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Registry key of the originating source",
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False, comment="Canonical URL")
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    merchant: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    submitter_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DealStatus.PENDING.value,
        index=True,
        comment="Status: 'pending', 'approved', 'rejected'",
    )

    __table_args__ = (
        UniqueConstraint("source_key", "url", name="uq_deals_source_url"),
        Index("idx_deals_kind_created", "kind", "created_at"),
        Index("idx_deals_url", "url"),
        Index(
            "idx_deals_title_trgm",
            "title",
            postgresql_using="gin",
            postgresql_ops={"title": "gin_trgm_ops"},
        ),
    )

    def __repr__(self) -> str:
        return f"<Deal(id={self.id}, source_key='{self.source_key}', title='{self.title[:50]}', status='{self.status}')>"
