"""
Card Engine — Database Engine

One async engine per process. PostgreSQL (asyncpg) gets a sized pool;
SQLite URLs used for local runs take the driver defaults.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from card_engine.config import settings
from card_engine.models import CardVariant

logger = structlog.get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_db_engine(database_url: str | None = None) -> tuple[AsyncEngine, SessionFactory]:
    """
    Build the engine and its session factory.

    Returns:
        (engine, session_factory)
    """
    url = make_url(database_url or settings.DATABASE_URL)

    options: dict[str, object] = {"pool_pre_ping": True}
    if url.get_backend_name() == "postgresql":
        options.update(pool_size=5, max_overflow=10, pool_recycle=3600)

    engine = create_async_engine(url, **options)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    logger.info(
        "database_engine_ready",
        database_url=url.render_as_string(hide_password=True),
        dialect=engine.dialect.name,
    )
    return engine, session_factory


async def check_connection(session_factory: SessionFactory) -> int:
    """
    Round-trip the database and count the catalog.

    Returns:
        Number of card variants currently stored.
    """
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
        return await session.scalar(select(func.count()).select_from(CardVariant)) or 0


@asynccontextmanager
async def database_lifespan(
    database_url: str | None = None,
) -> AsyncIterator[tuple[AsyncEngine, SessionFactory]]:
    """Engine that has passed the health check; disposed on exit."""
    engine, session_factory = create_db_engine(database_url)
    try:
        try:
            card_variants = await check_connection(session_factory)
        except Exception as e:
            logger.error(
                "database_health_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.info("database_health_check_passed", card_variants=card_variants)
        yield engine, session_factory
    finally:
        await engine.dispose()
        logger.info("database_engine_disposed")
