"""
Tests for Scryfall bulk ingestion.

End-to-end runs go through respx-mocked Scryfall into a temp-file SQLite
database. The large-stream test patches write_batch so only batching is
measured.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

import httpx
import pytest
import respx
from sqlalchemy import func, select

from card_engine.models import CardVariant, PricePoint, PriceSnapshot
from card_engine.pipeline import ingest as ingest_module
from card_engine.pipeline.ingest import (
    BulkIngestor,
    insert_price_points,
    is_ingestible,
    parse_card,
)
from card_engine.pipeline.scryfall import ScryfallError


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


def _mock_scryfall(scryfall_base, bulk_manifest, download_uri, content: bytes):
    respx.get(f"{scryfall_base}/bulk-data").mock(
        return_value=httpx.Response(200, json=bulk_manifest)
    )
    return respx.get(download_uri).mock(return_value=httpx.Response(200, content=content))


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


class TestFilter:
    def test_accepts_english_paper_card(self, make_card):
        assert is_ingestible(parse_card(make_card())) is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"lang": "ja"},
            {"layout": "token"},
            {"layout": "art_series"},
            {"games": ["mtgo", "arena"]},
        ],
    )
    def test_rejects(self, make_card, overrides):
        assert is_ingestible(parse_card(make_card(**overrides))) is False

    def test_missing_games_counts_as_paper(self, make_card):
        record = make_card()
        del record["games"]
        assert is_ingestible(parse_card(record)) is True

    def test_malformed_record_is_none(self):
        assert parse_card({"id": "x", "lang": "en"}) is None


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


class TestIngestEndToEnd:
    @pytest.mark.asyncio
    async def test_writes_variants_snapshots_and_points(
        self, session_factory, make_card, bulk_file, bulk_manifest, download_uri, scryfall_base
    ):
        records = [
            make_card("one"),
            make_card("two", finishes=["foil"], prices={"usd_foil": "7.00"}),
            make_card("token", layout="token"),
            make_card("jp", lang="ja"),
        ]

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, bulk_file(records))
            result = await BulkIngestor(session_factory).ingest()

        # "one" has usd, usd_foil, eur, tix; "two" has usd_foil only
        assert result.items_processed == 2
        assert result.prices_updated == 5

        async with session_factory() as session:
            keys = set(await session.scalars(select(CardVariant.variant_key)))
            foil = await session.get(CardVariant, "scryfall:two-foil")
            snapshot = await session.get(
                PriceSnapshot,
                {"market": "tcgplayer", "variant_key": "scryfall:one", "kind": "market", "currency": "USD"},
            )

        assert keys == {"scryfall:one", "scryfall:two-foil"}
        assert foil.printing_key == "mh3:42"
        assert foil.card_key == "oracle-two"
        assert snapshot.amount == Decimal("1.50")
        assert await _count(session_factory, PricePoint) == 5

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(
        self, session_factory, make_card, bulk_file, bulk_manifest, download_uri, scryfall_base
    ):
        content = bulk_file([make_card(f"c{i}") for i in range(3)])

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, content)
            await BulkIngestor(session_factory).ingest()
            counts_first = [
                await _count(session_factory, model)
                for model in (CardVariant, PriceSnapshot, PricePoint)
            ]
            await BulkIngestor(session_factory).ingest()
            counts_second = [
                await _count(session_factory, model)
                for model in (CardVariant, PriceSnapshot, PricePoint)
            ]

        assert counts_first == [3, 12, 12]
        assert counts_second == counts_first

    @pytest.mark.asyncio
    async def test_indented_bulk_file(
        self, session_factory, make_card, bulk_manifest, download_uri, scryfall_base
    ):
        records = [make_card(f"c{i}", prices={"usd": "1.00"}) for i in range(3)]
        content = json.dumps(records, indent=2).encode()

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, content)
            result = await BulkIngestor(session_factory).ingest()

        assert result.items_processed == 3
        assert result.prices_updated == 3
        assert await _count(session_factory, CardVariant) == 3

    @pytest.mark.asyncio
    async def test_same_day_price_change_updates_snapshot_not_history(
        self, session_factory, make_card, bulk_file, bulk_manifest, download_uri, scryfall_base
    ):
        morning = bulk_file([make_card("c1", prices={"usd": "2.00"})])
        evening = bulk_file([make_card("c1", prices={"usd": "2.50"})])

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, morning)
            await BulkIngestor(session_factory).ingest()

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, evening)
            await BulkIngestor(session_factory).ingest()

        async with session_factory() as session:
            snapshot = await session.get(
                PriceSnapshot,
                {"market": "tcgplayer", "variant_key": "scryfall:c1", "kind": "market", "currency": "USD"},
            )
            points = (await session.scalars(select(PricePoint))).all()

        assert snapshot.amount == Decimal("2.50")
        assert len(points) == 1
        assert points[0].amount == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_card_without_prices_still_upserted(
        self, session_factory, make_card, bulk_file, bulk_manifest, download_uri, scryfall_base
    ):
        content = bulk_file([make_card("np", prices={"usd": None, "eur": "0"})])

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, content)
            result = await BulkIngestor(session_factory).ingest()

        assert result.items_processed == 1
        assert result.prices_updated == 0
        assert await _count(session_factory, CardVariant) == 1
        assert await _count(session_factory, PriceSnapshot) == 0

    @pytest.mark.asyncio
    async def test_max_items_counts_accepted_records(
        self, session_factory, make_card, bulk_file, bulk_manifest, download_uri, scryfall_base
    ):
        records = []
        for i in range(10):
            records.append(make_card(f"tok{i}", layout="token"))
            records.append(make_card(f"card{i}"))

        with respx.mock:
            _mock_scryfall(scryfall_base, bulk_manifest, download_uri, bulk_file(records))
            result = await BulkIngestor(session_factory, batch_size=2).ingest(max_items=3)

        assert result.items_processed == 3
        assert await _count(session_factory, CardVariant) == 3

    @pytest.mark.asyncio
    async def test_manifest_failure_raises(self, session_factory, scryfall_base):
        with respx.mock:
            respx.get(f"{scryfall_base}/bulk-data").mock(return_value=httpx.Response(502))
            with pytest.raises(ScryfallError):
                await BulkIngestor(session_factory).ingest()

        assert await _count(session_factory, CardVariant) == 0


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


class TestBatching:
    @pytest.mark.asyncio
    async def test_failed_batch_is_skipped(self, session_factory, make_card, record_stream):
        ingestor = BulkIngestor(session_factory, batch_size=2)
        original = ingestor.write_batch
        calls = 0

        async def flaky_write(batch):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("database went away")
            return await original(batch)

        ingestor.write_batch = flaky_write

        records = [make_card(f"c{i}", prices={"usd": "1.00"}) for i in range(6)]
        result = await ingestor.ingest_records(record_stream(records))

        assert calls == 3
        assert result.items_processed == 4
        assert result.prices_updated == 4

        async with session_factory() as session:
            keys = set(await session.scalars(select(CardVariant.variant_key)))
        assert keys == {"scryfall:c0", "scryfall:c1", "scryfall:c4", "scryfall:c5"}

    @pytest.mark.asyncio
    async def test_failure_after_partial_writes_rolls_back_batch(
        self, session_factory, make_card, record_stream, monkeypatch
    ):
        calls = 0

        async def failing_points(session, observations, now):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("constraint violated")
            return await insert_price_points(session, observations, now)

        monkeypatch.setattr(ingest_module, "insert_price_points", failing_points)

        records = [make_card(f"c{i}", prices={"usd": "1.00"}) for i in range(4)]
        result = await BulkIngestor(session_factory, batch_size=2).ingest_records(
            record_stream(records)
        )

        assert result.items_processed == 2
        assert result.prices_updated == 2

        # Variants and snapshots of the second batch were written before the
        # failure and must not survive it
        async with session_factory() as session:
            keys = set(await session.scalars(select(CardVariant.variant_key)))
            snapshot_keys = set(await session.scalars(select(PriceSnapshot.variant_key)))
        assert keys == {"scryfall:c0", "scryfall:c1"}
        assert snapshot_keys == {"scryfall:c0", "scryfall:c1"}
        assert await _count(session_factory, PricePoint) == 2

    @pytest.mark.asyncio
    async def test_duplicate_variant_in_batch_last_wins(
        self, session_factory, make_card, record_stream
    ):
        records = [
            make_card("dup", name="First", prices={"usd": "1.00"}),
            make_card("dup", name="Second", prices={"usd": "2.00"}),
        ]
        result = await BulkIngestor(session_factory).ingest_records(record_stream(records))

        async with session_factory() as session:
            variant = await session.get(CardVariant, "scryfall:dup")

        assert result.items_processed == 1
        assert variant.name == "Second"

    @pytest.mark.asyncio
    async def test_large_stream_stays_within_batch_size(self, session_factory):
        batch_size = 200
        total = 100_000
        ingestor = BulkIngestor(session_factory, batch_size=batch_size)
        batch_sizes: list[int] = []

        async def record_batch(batch):
            batch_sizes.append(len(batch))
            return len(batch), 0

        ingestor.write_batch = record_batch

        async def synthetic() -> Any:
            for i in range(total):
                yield {
                    "id": f"syn-{i}",
                    "name": f"Synthetic {i}",
                    "lang": "en",
                    "layout": "normal",
                    "set": "syn",
                    "collector_number": str(i),
                    "prices": {"usd": "0.10"},
                }

        result = await ingestor.ingest_records(synthetic())

        assert result.items_processed == total
        assert max(batch_sizes) <= batch_size
        assert sum(batch_sizes) == total
        assert len(batch_sizes) == total // batch_size
