"""
Card Engine — Live Card Prices

Card-detail views want today's prices, not last night's ingest. This service
fronts Scryfall's /cards/{id} endpoint with the in-process TtlCache and, on a
fresh fetch, writes the observed prices through the same price_cache upsert
the bulk ingest uses.

Variant keys look like "scryfall:{id}" or "scryfall:{id}-foil"; both map to
the same upstream card.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_engine.config import settings
from card_engine.models import CardVariant
from card_engine.pipeline.ingest import upsert_price_snapshots
from card_engine.pipeline.scryfall import (
    PriceObservation,
    ScryfallClient,
    ScryfallLiveData,
    extract_prices,
)
from card_engine.utils.ttl_cache import TtlCache

logger = structlog.get_logger(__name__)

_VARIANT_PREFIX = "scryfall:"
_FOIL_SUFFIX = "-foil"


def scryfall_id_from_variant(variant_key: str) -> str:
    """Strip the scryfall: prefix and -foil suffix from a variant key."""
    scryfall_id = variant_key.removeprefix(_VARIANT_PREFIX)
    return scryfall_id.removesuffix(_FOIL_SUFFIX)


def build_live_price_cache() -> TtlCache[ScryfallLiveData]:
    return TtlCache(
        ttl_seconds=settings.LIVE_PRICE_CACHE_TTL_SECONDS,
        max_size=settings.LIVE_PRICE_CACHE_MAX_SIZE,
    )


class LivePriceService:
    """
    Cached per-card price lookups.

    Usage:
        async with ScryfallClient() as client:
            service = LivePriceService(client, session_factory=session_factory)
            prices = await service.get_live_prices("scryfall:abc-foil")
    """

    def __init__(
        self,
        client: ScryfallClient,
        cache: TtlCache[ScryfallLiveData] | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.client = client
        self.cache = cache if cache is not None else build_live_price_cache()
        self.session_factory = session_factory

    async def _lookup(self, variant_key: str) -> tuple[ScryfallLiveData, bool]:
        """Return (data, fresh) where fresh means it came from upstream just now."""
        scryfall_id = scryfall_id_from_variant(variant_key)

        cached = self.cache.get(scryfall_id)
        if cached is not None:
            logger.debug("live_price_cache_hit", scryfall_id=scryfall_id)
            return cached, False

        # ScryfallError propagates; the caller decides how to degrade
        data = await self.client.fetch_card(scryfall_id)
        self.cache.set(scryfall_id, data)
        logger.debug("live_price_cache_filled", scryfall_id=scryfall_id, cache_size=self.cache.size)
        return data, True

    async def get_live_data(self, variant_key: str) -> ScryfallLiveData:
        """Live card data (prices + purchase links), cached per Scryfall id."""
        data, _ = await self._lookup(variant_key)
        return data

    async def get_live_prices(self, variant_key: str) -> list[PriceObservation]:
        """
        Live price observations for a variant.

        A fresh fetch also refreshes price_cache so the watchlist job sees the
        newest price before the next bulk ingest. Variants missing from the
        catalog are returned but not written.
        """
        data, fresh = await self._lookup(variant_key)
        observations = extract_prices(data.prices)

        if fresh and observations and self.session_factory is not None:
            now = datetime.now(timezone.utc)
            async with self.session_factory() as session:
                async with session.begin():
                    if await session.get(CardVariant, variant_key) is None:
                        logger.info(
                            "live_price_snapshot_skipped_unknown_variant",
                            variant_key=variant_key,
                        )
                        return observations
                    written = await upsert_price_snapshots(
                        session,
                        ((variant_key, obs) for obs in observations),
                        now,
                    )
            logger.info("live_price_snapshot_refreshed", variant_key=variant_key, prices=written)

        return observations
