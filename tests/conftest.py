"""
Card Engine — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- File-backed aiosqlite database with every table created
- Scryfall bulk record / bulk file builders
- Async test support via pytest-asyncio
"""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Iterable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from card_engine.models import Base


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)

SCRYFALL_BASE = "https://api.scryfall.com"
BULK_DOWNLOAD_URI = "https://data.scryfall.io/default-cards/default-cards-20261018.json"


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    aiosqlite engine on a temp file.

    A file rather than :memory: because the lease lock and per-batch ingest
    sessions open several connections that must see the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'card_engine.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Scryfall Data Builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_card() -> Callable[..., dict[str, Any]]:
    """Build a default_cards bulk record; keyword overrides replace fields."""

    def _make(card_id: str = "a1b2c3", **overrides: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "object": "card",
            "id": card_id,
            "oracle_id": f"oracle-{card_id}",
            "name": f"Card {card_id}",
            "lang": "en",
            "layout": "normal",
            "set": "mh3",
            "collector_number": "42",
            "oracle_text": "Flying",
            "type_line": "Creature — Bird",
            "colors": ["U"],
            "color_identity": ["U"],
            "cmc": 2.0,
            "mana_cost": "{1}{U}",
            "rarity": "uncommon",
            "finishes": ["nonfoil", "foil"],
            "games": ["paper", "mtgo"],
            "image_uris": {"normal": f"https://cards.scryfall.io/normal/{card_id}.jpg"},
            "prices": {
                "usd": "1.50",
                "usd_foil": "3.25",
                "usd_etched": None,
                "eur": "1.10",
                "eur_foil": None,
                "eur_etched": None,
                "tix": "0.02",
            },
        }
        record.update(overrides)
        return record

    return _make


def render_bulk_file(records: Iterable[dict[str, Any]]) -> bytes:
    """Render records the way Scryfall does: a JSON array, one card per line."""
    lines = ",\n".join(json.dumps(record) for record in records)
    return f"[\n{lines}\n]\n".encode()


def render_manifest(download_uri: str = BULK_DOWNLOAD_URI) -> dict[str, Any]:
    return {
        "object": "list",
        "has_more": False,
        "data": [
            {
                "type": "oracle_cards",
                "download_uri": "https://data.scryfall.io/oracle-cards/oracle-cards.json",
                "size": 160_000_000,
            },
            {
                "type": "default_cards",
                "download_uri": download_uri,
                "updated_at": "2026-10-18T09:05:11.000+00:00",
                "size": 500_000_000,
            },
        ],
    }


async def aiter_records(records: Iterable[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    for record in records:
        yield record


@pytest.fixture
def bulk_file() -> Callable[[Iterable[dict[str, Any]]], bytes]:
    return render_bulk_file


@pytest.fixture
def bulk_manifest() -> dict[str, Any]:
    return render_manifest()


@pytest.fixture
def record_stream() -> Callable[[Iterable[dict[str, Any]]], AsyncIterator[dict[str, Any]]]:
    """Wrap plain records in an async iterator, as iter_bulk_records yields them."""
    return aiter_records


@pytest.fixture
def download_uri() -> str:
    return BULK_DOWNLOAD_URI


@pytest.fixture
def scryfall_base() -> str:
    return SCRYFALL_BASE
