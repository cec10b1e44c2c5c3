"""
Card Engine — Card Variant Model

Canonical catalog entry, one row per priced printing/finish. Written only by the
bulk ingestion pipeline; read by the watchlist job and card-detail lookups.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, TIMESTAMP, Float, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class CardVariant(Base):
    """
    One specific printing in one specific finish.

    variant_key is "scryfall:{id}" with a "-foil" suffix for foil-only printings,
    so finishes of the same card coexist as separate rows sharing card_key.
    The key is immutable once assigned.
    """

    __tablename__ = "card_variants"

    variant_key: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Opaque variant key: scryfall:{id}[-foil]"
    )
    game: Mapped[str] = mapped_column(
        String, nullable=False, default="mtg", comment="Game identifier"
    )
    card_key: Mapped[str] = mapped_column(
        String, nullable=False, comment="Logical card identity (Scryfall oracle_id)"
    )
    printing_key: Mapped[str] = mapped_column(
        String, nullable=False, comment="Printing identity: {set}:{collector_number}"
    )
    name: Mapped[str] = mapped_column(String, nullable=False, comment="Card name")
    set_code: Mapped[str | None] = mapped_column(String, nullable=True)
    collector_number: Mapped[str | None] = mapped_column(String, nullable=True)
    oracle_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    type_line: Mapped[str | None] = mapped_column(String, nullable=True)
    colors: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    color_identity: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    cmc: Mapped[float | None] = mapped_column(Float, nullable=True, comment="Mana value")
    mana_cost: Mapped[str | None] = mapped_column(String, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    image_uri: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last ingestion that touched this row",
    )

    __table_args__ = (
        Index("ix_card_variants_game_name", "game", "name"),
        Index("ix_card_variants_game_set_number", "game", "set_code", "collector_number"),
    )

    def __repr__(self) -> str:
        return f"<CardVariant variant_key={self.variant_key!r} name={self.name!r}>"
