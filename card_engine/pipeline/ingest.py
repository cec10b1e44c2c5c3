"""
Card Engine — Scryfall Bulk Ingestion

Downloads the default_cards catalog and keeps three tables current:
- card_variants  → upsert, every column overwritten (idempotent re-ingest)
- price_cache    → upsert on (market, variant_key, kind, currency)
- price_points   → insert, ON CONFLICT DO NOTHING on the per-UTC-day key

Records stream in one at a time and are written in fixed-size batches, one
transaction per batch, so card rows always commit with their prices. A batch
that fails is rolled back and skipped; earlier batches stay committed and the
next run heals the gap. Only manifest/download failures escape ingest().
"""

from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Any, AsyncIterable, Callable, Iterable

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_engine.config import settings
from card_engine.models.base import upsert_insert
from card_engine.models.card_variant import CardVariant
from card_engine.models.price_cache import PriceSnapshot
from card_engine.models.price_point import PricePoint
from card_engine.pipeline.scryfall import (
    PriceObservation,
    ScryfallCard,
    ScryfallClient,
    extract_prices,
)

logger = structlog.get_logger(__name__)


class IngestResult(BaseModel):
    """Counts from committed batches only."""
    items_processed: int = 0
    prices_updated: int = 0


# ---------------------------------------------------------------------------
# Record filtering and row building
# ---------------------------------------------------------------------------


def parse_card(record: dict[str, Any]) -> ScryfallCard | None:
    """Validate a raw bulk record. Malformed records give None."""
    try:
        return ScryfallCard.model_validate(record)
    except ValidationError as e:
        logger.debug(
            "scryfall_record_malformed",
            scryfall_id=record.get("id"),
            errors=e.error_count(),
        )
        return None


def is_ingestible(card: ScryfallCard) -> bool:
    """English, paper, and not a token or art-series card."""
    if card.lang != settings.INGEST_LANGUAGE:
        return False
    if card.layout in settings.INGEST_EXCLUDED_LAYOUTS:
        return False
    # Older records carry no games list; treat them as paper
    if card.games is not None and "paper" not in card.games:
        return False
    return True


def card_variant_row(card: ScryfallCard, now: datetime) -> dict[str, Any]:
    return {
        "variant_key": card.variant_key,
        "game": "mtg",
        "card_key": card.oracle_id or card.id,
        "printing_key": f"{card.set}:{card.collector_number}",
        "name": card.name,
        "set_code": card.set,
        "collector_number": card.collector_number,
        "oracle_text": card.full_oracle_text,
        "type_line": card.type_line,
        "colors": card.colors or None,
        "color_identity": card.color_identity or None,
        "cmc": card.cmc,
        "mana_cost": card.mana_cost,
        "rarity": card.rarity,
        "image_uri": card.image_url,
        "updated_at": now,
    }


# ---------------------------------------------------------------------------
# Shared price write path (also used by live card-detail lookups)
# ---------------------------------------------------------------------------


async def upsert_price_snapshots(
    session: AsyncSession,
    variant_key_prices: Iterable[tuple[str, PriceObservation]],
    now: datetime,
) -> int:
    """
    Overwrite price_cache rows for the given observations.

    Returns:
        Number of distinct (market, variant, kind, currency) rows written.
    """
    rows: dict[tuple[str, str, str, str], dict[str, Any]] = {}
    for variant_key, obs in variant_key_prices:
        rows[(obs.market, variant_key, obs.kind, obs.currency)] = {
            "market": obs.market,
            "variant_key": variant_key,
            "kind": obs.kind,
            "currency": obs.currency,
            "amount": obs.amount,
            "updated_at": now,
        }
    if not rows:
        return 0

    stmt = upsert_insert(session, PriceSnapshot)
    stmt = stmt.on_conflict_do_update(
        index_elements=["market", "variant_key", "kind", "currency"],
        set_={
            "amount": stmt.excluded.amount,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt, list(rows.values()))
    return len(rows)


async def insert_price_points(
    session: AsyncSession,
    variant_key_prices: Iterable[tuple[str, PriceObservation]],
    now: datetime,
) -> int:
    """
    Append today's history points; days already recorded are left untouched.

    price_date is the UTC calendar day of `now`.
    """
    price_date = now.astimezone(timezone.utc).date()
    rows: dict[tuple[str, str, str], dict[str, Any]] = {}
    for variant_key, obs in variant_key_prices:
        # First observation of the day wins, matching ON CONFLICT DO NOTHING
        rows.setdefault(
            (variant_key, obs.market, obs.kind),
            {
                "variant_key": variant_key,
                "market": obs.market,
                "kind": obs.kind,
                "currency": obs.currency,
                "amount": obs.amount,
                "recorded_at": now,
                "price_date": price_date,
            },
        )
    if not rows:
        return 0

    stmt = upsert_insert(session, PricePoint).on_conflict_do_nothing(
        index_elements=["variant_key", "market", "kind", "price_date"],
    )
    await session.execute(stmt, list(rows.values()))
    return len(rows)


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class BulkIngestor:
    """
    Streams the Scryfall catalog into the database.

    Usage:
        ingestor = BulkIngestor(session_factory)
        result = await ingestor.ingest(max_items=500)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: Callable[[], ScryfallClient] = ScryfallClient,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.batch_size = batch_size or settings.INGEST_BATCH_SIZE

    async def ingest(self, max_items: int | None = None) -> IngestResult:
        """
        Fetch the manifest, stream the default_cards file, and write it in batches.

        Args:
            max_items: Stop after this many records have passed the filter.

        Raises:
            ScryfallError: manifest or download failure. Nothing is retried here.
        """
        logger.info("scryfall_ingest_start", max_items=max_items)

        async with self.client_factory() as client:
            download_uri = await client.fetch_default_cards_uri()
            records = client.iter_bulk_records(download_uri)
            async with contextlib.aclosing(records):
                result = await self.ingest_records(records, max_items=max_items)

        logger.info(
            "scryfall_ingest_complete",
            items_processed=result.items_processed,
            prices_updated=result.prices_updated,
        )
        return result

    async def ingest_records(
        self,
        records: AsyncIterable[dict[str, Any]],
        max_items: int | None = None,
    ) -> IngestResult:
        """
        Filter, batch and write an async stream of raw bulk records.

        At most one batch of accepted cards is held in memory at a time.
        """
        if max_items is not None and max_items < 1:
            # MAX_CARDS=0 from the CLI/env means "no cap"
            max_items = None

        result = IngestResult()
        batch: list[ScryfallCard] = []
        accepted = 0
        skipped = 0
        next_progress = settings.INGEST_PROGRESS_EVERY

        async for record in records:
            card = parse_card(record)
            if card is None or not is_ingestible(card):
                skipped += 1
                continue

            batch.append(card)
            accepted += 1

            if len(batch) >= self.batch_size:
                await self._flush(batch, result)
                batch = []
                if accepted >= next_progress:
                    logger.info(
                        "scryfall_ingest_progress",
                        accepted=accepted,
                        skipped=skipped,
                        items_processed=result.items_processed,
                        prices_updated=result.prices_updated,
                    )
                    next_progress += settings.INGEST_PROGRESS_EVERY

            if max_items is not None and accepted >= max_items:
                break

        if batch:
            await self._flush(batch, result)

        logger.info(
            "scryfall_ingest_records_done",
            accepted=accepted,
            skipped=skipped,
            items_processed=result.items_processed,
            prices_updated=result.prices_updated,
        )
        return result

    async def _flush(self, batch: list[ScryfallCard], result: IngestResult) -> None:
        """Write one batch; on failure log and leave the counts untouched."""
        try:
            items, prices = await self.write_batch(batch)
        except Exception as e:
            logger.error(
                "scryfall_ingest_batch_failed",
                batch_size=len(batch),
                first_variant=batch[0].variant_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        result.items_processed += items
        result.prices_updated += prices

    async def write_batch(self, batch: list[ScryfallCard]) -> tuple[int, int]:
        """
        Upsert variants, price snapshots and history points in one transaction.

        Returns:
            (variants written, price observations written)
        """
        now = datetime.now(timezone.utc)

        variant_rows: dict[str, dict[str, Any]] = {}
        observations: list[tuple[str, PriceObservation]] = []
        for card in batch:
            variant_rows[card.variant_key] = card_variant_row(card, now)
            for obs in extract_prices(card.prices):
                observations.append((card.variant_key, obs))

        async with self.session_factory() as session:
            async with session.begin():
                stmt = upsert_insert(session, CardVariant)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["variant_key"],
                    set_={
                        column: stmt.excluded[column]
                        for column in next(iter(variant_rows.values()))
                        if column != "variant_key"
                    },
                )
                await session.execute(stmt, list(variant_rows.values()))

                prices = await upsert_price_snapshots(session, observations, now)
                await insert_price_points(session, observations, now)

        logger.debug(
            "scryfall_ingest_batch_committed",
            items=len(variant_rows),
            prices=prices,
        )
        return len(variant_rows), prices


async def ingest_scryfall_bulk(
    session_factory: async_sessionmaker[AsyncSession],
    max_items: int | None = None,
) -> IngestResult:
    """Convenience entrypoint used by the scheduler and the admin script."""
    return await BulkIngestor(session_factory).ingest(max_items=max_items)
