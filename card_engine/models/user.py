"""
Card Engine — User & Push Token Models

Minimal user identity plus the Expo push tokens registered by mobile clients.
Account management lives in the API layer; the pricing core only reads these.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BOOLEAN, TIMESTAMP, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class User(Base):
    """Core user identity record."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        comment="Account creation timestamp",
    )
    banned: Mapped[bool] = mapped_column(BOOLEAN, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<User id={self.id!r} display_name={self.display_name!r}>"


class PushToken(Base):
    """
    A device push token.

    Tokens are globally unique; a user may have several (one per device).
    """

    __tablename__ = "push_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(String, nullable=False, comment="'ios' or 'android'")
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<PushToken user_id={self.user_id!r} platform={self.platform!r}>"
