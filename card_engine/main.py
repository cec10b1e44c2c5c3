"""
Card Engine — Service Entrypoint

Run via:
    python -m card_engine.main
"""

from __future__ import annotations

import asyncio

import structlog

from card_engine.config import settings
from card_engine.database import database_lifespan
from card_engine.pipeline.scheduler import run_scheduler
from card_engine.utils.logger import setup_logging

__version__ = "0.1.0"

logger = structlog.get_logger(__name__)


async def main() -> None:
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info(
        "card_engine_starting",
        version=__version__,
        price_refresh_enabled=settings.ENABLE_PRICE_REFRESH,
        watchlist_check_enabled=settings.ENABLE_WATCHLIST_CHECK,
        expo_authenticated=bool(settings.EXPO_ACCESS_TOKEN),
    )

    async with database_lifespan() as (engine, session_factory):
        await run_scheduler(engine, session_factory)

    logger.info("card_engine_stopped")


if __name__ == "__main__":
    asyncio.run(main())
