"""
Card Engine — Admin Bulk Ingest Script

Runs one Scryfall bulk ingest outside the scheduler, under the same
price_refresh leader lock, so it never overlaps a scheduled refresh.

Usage:
    python scripts/ingest.py
    python scripts/ingest.py --max-cards 500
    MAX_CARDS=500 python scripts/ingest.py
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from card_engine.config import JobName, settings
from card_engine.database import create_db_engine
from card_engine.pipeline.ingest import BulkIngestor, IngestResult
from card_engine.pipeline.leader_lock import build_leader_lock
from card_engine.pipeline.scryfall import ScryfallError
from card_engine.utils.logger import setup_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ingest the Scryfall default_cards catalog into Card Engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py                  # full catalog
  python scripts/ingest.py --max-cards 500  # quick local seed
""",
    )
    parser.add_argument(
        "--max-cards",
        type=int,
        default=int(os.environ.get("MAX_CARDS", "0")),
        help="Stop after this many cards pass the filter. 0 means no cap (default: $MAX_CARDS or 0).",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL for this run.",
    )
    return parser.parse_args(argv)


async def run_ingest(max_cards: int, database_url: str | None = None) -> IngestResult | None:
    """
    Run one lock-guarded ingest.

    Returns:
        The ingest result, or None if another instance holds the lock.
    """
    engine, session_factory = create_db_engine(database_url)
    lock = build_leader_lock(engine, session_factory)
    ingestor = BulkIngestor(session_factory)
    results: list[IngestResult] = []

    async def job() -> None:
        results.append(await ingestor.ingest(max_items=max_cards or None))

    try:
        ran = await lock.with_lock(JobName.PRICE_REFRESH, job)
    finally:
        await engine.dispose()

    return results[0] if ran else None


async def main() -> None:
    args = parse_args()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    print(f"Starting Scryfall ingest (max cards: {args.max_cards or 'all'})")

    try:
        result = await run_ingest(args.max_cards, args.database_url)
    except ScryfallError as e:
        print(f"Ingest failed: {e}", file=sys.stderr)
        sys.exit(1)

    if result is None:
        print("Another instance is already running the price refresh; nothing to do.")
        sys.exit(2)

    print("Ingest complete.")
    print(f"  items_processed = {result.items_processed}")
    print(f"  prices_updated  = {result.prices_updated}")


if __name__ == "__main__":
    asyncio.run(main())
