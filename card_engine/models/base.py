"""
SQLAlchemy 2.0 async DeclarativeBase for Card Engine.

All models inherit from this Base.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all Card Engine database models."""
    pass


def upsert_insert(session: AsyncSession, model: type[Base]) -> Any:
    """
    Return a dialect-specific INSERT that supports ON CONFLICT clauses.

    PostgreSQL in production, SQLite in tests and local dev. Both expose the
    same on_conflict_do_update / on_conflict_do_nothing API.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT upserts are not supported on {dialect!r}")
