"""
Card Engine — Job Lease Model

Lease rows for the LeaseLock leader-lock backend, used where the database has
no session-scoped advisory lock (SQLite). A lease is live while expires_at is
in the future; the holder's heartbeat keeps pushing it forward.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from card_engine.models.base import Base


class JobLease(Base):
    """One row per lock id while some instance holds (or last held) the lock."""

    __tablename__ = "job_leases"

    lock_id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=False)
    job_name: Mapped[str] = mapped_column(String, nullable=False)
    holder: Mapped[str] = mapped_column(String, nullable=False, comment="Random per-acquire token")
    acquired_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<JobLease lock_id={self.lock_id} job={self.job_name!r} until={self.expires_at}>"
