"""
Card Engine — Price Snapshot Model

Current price per (market, variant, kind, currency). Overwritten on every
ingestion cycle and on live card-detail fetches.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DECIMAL, TIMESTAMP, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class PriceSnapshot(Base):
    """
    Latest observed price.

    Composite primary key (market, variant_key, kind, currency): at most one
    row per tuple.
    """

    __tablename__ = "price_cache"

    market: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Marketplace: 'tcgplayer', 'cardmarket', 'mtgo'"
    )
    variant_key: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Price tier: 'market', 'foil', 'etched'"
    )
    currency: Mapped[str] = mapped_column(
        String, primary_key=True, comment="ISO currency code, or 'TIX'"
    )
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_price_cache_variant_key", "variant_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<PriceSnapshot {self.market}/{self.variant_key}/{self.kind} "
            f"{self.amount} {self.currency}>"
        )
