"""
Tests for engine construction and the startup health check.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from card_engine.database import check_connection, create_db_engine, database_lifespan
from card_engine.models import CardVariant


class TestCreateDbEngine:
    @pytest.mark.asyncio
    async def test_sqlite_url(self, tmp_path):
        engine, session_factory = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        try:
            assert engine.dialect.name == "sqlite"
            assert session_factory.kw["expire_on_commit"] is False
        finally:
            await engine.dispose()


class TestDatabaseLifespan:
    @pytest.mark.asyncio
    async def test_counts_catalog(self, db_engine, session_factory, tmp_path):
        async with session_factory() as session:
            session.add(
                CardVariant(
                    variant_key="scryfall:seed",
                    game="mtg",
                    card_key="oracle-seed",
                    printing_key="seed:1",
                    name="Seed Card",
                )
            )
            await session.commit()

        assert await check_connection(session_factory) == 1

        async with database_lifespan(f"sqlite+aiosqlite:///{tmp_path / 'card_engine.db'}") as (
            engine,
            lifespan_sessions,
        ):
            assert await check_connection(lifespan_sessions) == 1

    @pytest.mark.asyncio
    async def test_unready_database_raises(self, tmp_path):
        # No tables yet, so the catalog count fails
        with pytest.raises(OperationalError):
            async with database_lifespan(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"):
                pytest.fail("body must not run when the health check fails")
