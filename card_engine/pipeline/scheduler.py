"""
Card Engine — Job Scheduler

Runs the two recurring jobs on independent clocks:
- Price refresh: Scryfall bulk ingest, every 24 hours by default
- Watchlist check: threshold evaluation, every 60 minutes by default

Each job polls its clock in its own task. Every instance runs the scheduler;
the leader lock makes sure only one of them actually executes a given job at
a time. A job that fails or loses the lock is logged and retried on its next
tick.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from card_engine.config import JobName, settings
from card_engine.models.card_variant import CardVariant
from card_engine.pipeline.ingest import BulkIngestor
from card_engine.pipeline.leader_lock import LeaderLock, build_leader_lock, job_key
from card_engine.signals.watchlist import WatchlistChecker

logger = structlog.get_logger(__name__)


class Scheduler:
    """
    Async scheduler for the pricing jobs.

    Each job keeps its own last-run timestamp. Both start "just ran", so the
    first refresh happens one interval after startup unless the catalog is
    empty (see auto_ingest_if_empty).
    """

    def __init__(
        self,
        db_engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        leader_lock: LeaderLock | None = None,
        ingestor: BulkIngestor | None = None,
        watchlist_checker: WatchlistChecker | None = None,
    ):
        self.db_engine = db_engine
        self.session_factory = session_factory
        self.leader_lock = leader_lock or build_leader_lock(db_engine, session_factory)
        self.ingestor = ingestor or BulkIngestor(session_factory)
        self.watchlist_checker = watchlist_checker or WatchlistChecker(session_factory)
        self._shutdown_event = asyncio.Event()

        self._price_refresh_last_run: datetime = datetime.now(timezone.utc)
        self._price_refresh_cadence_minutes = settings.PRICE_REFRESH_INTERVAL_HOURS * 60

        self._watchlist_last_check: datetime = datetime.now(timezone.utc)
        self._watchlist_cadence_minutes = settings.WATCHLIST_CHECK_INTERVAL_MINUTES

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested")
        self._shutdown_event.set()

    def _should_refresh_prices(self) -> bool:
        if not settings.ENABLE_PRICE_REFRESH:
            return False
        now = datetime.now(timezone.utc)
        elapsed_minutes = (now - self._price_refresh_last_run).total_seconds() / 60
        return elapsed_minutes >= self._price_refresh_cadence_minutes

    def _should_check_watchlist(self) -> bool:
        if not settings.ENABLE_WATCHLIST_CHECK:
            return False
        now = datetime.now(timezone.utc)
        elapsed_minutes = (now - self._watchlist_last_check).total_seconds() / 60
        return elapsed_minutes >= self._watchlist_cadence_minutes

    async def _run_ingest(self) -> None:
        result = await self.ingestor.ingest()
        logger.info(
            "scheduler_price_refresh_complete",
            items_processed=result.items_processed,
            prices_updated=result.prices_updated,
            next_refresh_in_hours=settings.PRICE_REFRESH_INTERVAL_HOURS,
        )

    async def _run_watchlist_check(self) -> None:
        fired = await self.watchlist_checker.evaluate_watch_entries()
        logger.info(
            "scheduler_watchlist_check_complete",
            notifications=fired,
            next_check_in_minutes=settings.WATCHLIST_CHECK_INTERVAL_MINUTES,
        )

    async def _refresh_prices(self) -> bool:
        """
        Run the bulk ingest under the price_refresh lock.

        Returns:
            True if this instance ran the job.
        """
        # Clock advances whether or not we win the lock, so losers wait a full interval
        self._price_refresh_last_run = datetime.now(timezone.utc)
        logger.info("scheduler_price_refresh_start")
        try:
            return await self.leader_lock.with_lock(JobName.PRICE_REFRESH, self._run_ingest)
        except Exception as e:
            logger.error(
                "scheduler_price_refresh_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def _check_watchlist(self) -> bool:
        """Run the watchlist evaluation under the watchlist_check lock."""
        self._watchlist_last_check = datetime.now(timezone.utc)
        logger.info("scheduler_watchlist_check_start")
        try:
            return await self.leader_lock.with_lock(
                JobName.WATCHLIST_CHECK, self._run_watchlist_check
            )
        except Exception as e:
            logger.error(
                "scheduler_watchlist_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def auto_ingest_if_empty(self) -> bool:
        """
        Seed an empty catalog with one lock-guarded ingest.

        Returns:
            True if an ingest ran on this instance.
        """
        if not settings.AUTO_INGEST_ON_EMPTY:
            return False

        try:
            async with self.session_factory() as session:
                count = await session.scalar(select(func.count()).select_from(CardVariant))
        except Exception as e:
            logger.error(
                "scheduler_catalog_count_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if count:
            logger.info("scheduler_catalog_present", card_variants=count)
            return False

        logger.info("scheduler_catalog_empty_auto_ingest")
        return await self._refresh_prices()

    async def _job_loop(
        self,
        job_name: JobName,
        is_due: Callable[[], bool],
        run_job: Callable[[], Awaitable[bool]],
    ) -> None:
        """Poll one job's clock until shutdown. Errors are logged and the loop continues."""
        while not self._shutdown_event.is_set():
            tick = settings.SCHEDULER_TICK_SECONDS
            try:
                if is_due():
                    await run_job()

                await asyncio.wait_for(self._shutdown_event.wait(), timeout=tick)
            except asyncio.TimeoutError:
                # No shutdown signal within the tick
                continue
            except Exception as e:
                logger.error(
                    "scheduler_unknown_error",
                    job=job_key(job_name),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(tick)

    async def run(self) -> None:
        """
        Main scheduler entrypoint. Runs until shutdown is signaled.

        The empty-catalog ingest and each job loop are separate tasks, so a
        multi-minute ingest never delays a due watchlist check.
        """
        logger.info(
            "scheduler_started",
            price_refresh_enabled=settings.ENABLE_PRICE_REFRESH,
            price_refresh_cadence_hours=settings.PRICE_REFRESH_INTERVAL_HOURS,
            watchlist_check_enabled=settings.ENABLE_WATCHLIST_CHECK,
            watchlist_check_cadence_minutes=settings.WATCHLIST_CHECK_INTERVAL_MINUTES,
        )

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self.auto_ingest_if_empty())
                tg.create_task(
                    self._job_loop(
                        JobName.PRICE_REFRESH,
                        self._should_refresh_prices,
                        self._refresh_prices,
                    )
                )
                tg.create_task(
                    self._job_loop(
                        JobName.WATCHLIST_CHECK,
                        self._should_check_watchlist,
                        self._check_watchlist,
                    )
                )
        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """
    Initialize and run the scheduler with graceful shutdown handling.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.
    """
    scheduler = Scheduler(db_engine, session_factory)

    def handle_signal(_signum: int, _frame: Any) -> None:
        logger.info("scheduler_signal_received", signal=_signum)
        asyncio.create_task(scheduler.shutdown())

    loop = asyncio.get_running_loop()

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM, None)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT, None)
    except NotImplementedError:
        # Windows event loops lack add_signal_handler
        logger.warning("signal_handlers_not_supported_on_platform")

    try:
        await scheduler.run()
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
