"""
Card Engine — Price Point Model

Append-only daily price history used for charts. Never updated — each
ingestion inserts at most one row per variant/market/kind per UTC day and
silently skips days that are already recorded.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import DATE, DECIMAL, TIMESTAMP, Index, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class PricePoint(Base):
    """
    One immutable daily sample.

    The (variant_key, market, kind, price_date) unique constraint is what the
    ingestion's ON CONFLICT DO NOTHING targets.
    """

    __tablename__ = "price_points"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    variant_key: Mapped[str] = mapped_column(String, nullable=False)
    market: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="UTC timestamp of the ingestion that recorded this point",
    )
    price_date: Mapped[date] = mapped_column(
        DATE, nullable=False, comment="UTC calendar day, dedup key"
    )

    __table_args__ = (
        UniqueConstraint(
            "variant_key", "market", "kind", "price_date",
            name="uq_price_points_variant_market_kind_day",
        ),
        Index("ix_price_points_market_variant_recorded", "market", "variant_key", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PricePoint {self.market}/{self.variant_key}/{self.kind} "
            f"{self.amount} {self.currency} on {self.price_date}>"
        )
