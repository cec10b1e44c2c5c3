"""
Card Engine — Watchlist Entry Model

A user-defined price threshold on one variant/market/kind/currency. Created
and deleted by users through the API; the watchlist job only flips enabled to
False when the threshold fires.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BOOLEAN, DECIMAL, TIMESTAMP, CheckConstraint, ForeignKey, Index, String, Uuid, func, true
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class WatchlistEntry(Base):
    """
    Price alert rule.

    direction "above" fires when amount >= threshold_amount, "below" when
    amount <= threshold_amount. A disabled entry stays inert until the user
    re-enables it.
    """

    __tablename__ = "watchlist_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_key: Mapped[str] = mapped_column(String, nullable=False)
    market: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    threshold_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    direction: Mapped[str] = mapped_column(
        String, nullable=False, comment="'above' or 'below'"
    )
    enabled: Mapped[bool] = mapped_column(
        BOOLEAN, default=True, server_default=true(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_watchlist_entries_user_enabled", "user_id", "enabled"),
        CheckConstraint("direction IN ('above', 'below')", name="ck_watchlist_entries_direction"),
    )

    def __repr__(self) -> str:
        return (
            f"<WatchlistEntry id={self.id!r} {self.variant_key} {self.direction} "
            f"{self.threshold_amount} {self.currency} enabled={self.enabled}>"
        )
