"""
Tests for the scheduler module.

Validates cadence checks, feature flags, lock-guarded job dispatch, the
empty-catalog bootstrap, and graceful shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from card_engine.config import JobName, settings
from card_engine.models import CardVariant
from card_engine.pipeline.ingest import IngestResult
from card_engine.pipeline.leader_lock import LeaseLock
from card_engine.pipeline.scheduler import Scheduler


def _lock_that_runs_jobs() -> MagicMock:
    """Leader lock double that always wins and runs the job."""

    async def with_lock(job_name, job):
        await job()
        return True

    lock = MagicMock()
    lock.with_lock = AsyncMock(side_effect=with_lock)
    return lock


@pytest.fixture
def ingestor() -> MagicMock:
    mock = MagicMock()
    mock.ingest = AsyncMock(return_value=IngestResult(items_processed=10, prices_updated=30))
    return mock


@pytest.fixture
def watchlist_checker() -> MagicMock:
    mock = MagicMock()
    mock.evaluate_watch_entries = AsyncMock(return_value=2)
    return mock


@pytest.fixture
def scheduler(db_engine, session_factory, ingestor, watchlist_checker) -> Scheduler:
    return Scheduler(
        db_engine,
        session_factory,
        leader_lock=_lock_that_runs_jobs(),
        ingestor=ingestor,
        watchlist_checker=watchlist_checker,
    )


# ---------------------------------------------------------------------------
# Cadence
# ---------------------------------------------------------------------------


class TestCadence:
    def test_init(self, scheduler):
        assert scheduler._shutdown_event is not None
        assert scheduler._price_refresh_cadence_minutes == settings.PRICE_REFRESH_INTERVAL_HOURS * 60
        assert scheduler._watchlist_cadence_minutes == settings.WATCHLIST_CHECK_INTERVAL_MINUTES

    def test_default_lock_backend(self, db_engine, session_factory):
        assert isinstance(Scheduler(db_engine, session_factory).leader_lock, LeaseLock)

    def test_should_refresh_prices(self, scheduler):
        scheduler._price_refresh_last_run = datetime.now(timezone.utc) - timedelta(hours=25)
        assert scheduler._should_refresh_prices() is True

        scheduler._price_refresh_last_run = datetime.now(timezone.utc)
        assert scheduler._should_refresh_prices() is False

    def test_should_check_watchlist(self, scheduler):
        scheduler._watchlist_last_check = datetime.now(timezone.utc) - timedelta(minutes=61)
        assert scheduler._should_check_watchlist() is True

        scheduler._watchlist_last_check = datetime.now(timezone.utc) - timedelta(minutes=30)
        assert scheduler._should_check_watchlist() is False

    def test_disabled_jobs_never_due(self, scheduler, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_PRICE_REFRESH", False)
        monkeypatch.setattr(settings, "ENABLE_WATCHLIST_CHECK", False)
        scheduler._price_refresh_last_run = datetime.now(timezone.utc) - timedelta(days=7)
        scheduler._watchlist_last_check = datetime.now(timezone.utc) - timedelta(days=7)

        assert scheduler._should_refresh_prices() is False
        assert scheduler._should_check_watchlist() is False


# ---------------------------------------------------------------------------
# Job dispatch
# ---------------------------------------------------------------------------


class TestJobs:
    @pytest.mark.asyncio
    async def test_refresh_prices_runs_under_lock(self, scheduler, ingestor):
        scheduler._price_refresh_last_run = datetime.now(timezone.utc) - timedelta(hours=25)

        assert await scheduler._refresh_prices() is True

        scheduler.leader_lock.with_lock.assert_awaited_once()
        assert scheduler.leader_lock.with_lock.await_args.args[0] == JobName.PRICE_REFRESH
        ingestor.ingest.assert_awaited_once()
        assert scheduler._should_refresh_prices() is False

    @pytest.mark.asyncio
    async def test_check_watchlist_runs_under_lock(self, scheduler, watchlist_checker):
        assert await scheduler._check_watchlist() is True

        assert scheduler.leader_lock.with_lock.await_args.args[0] == JobName.WATCHLIST_CHECK
        watchlist_checker.evaluate_watch_entries.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_lock_skips_job(self, scheduler, ingestor):
        scheduler.leader_lock.with_lock = AsyncMock(return_value=False)

        assert await scheduler._refresh_prices() is False
        ingestor.ingest.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_job_failure_is_contained(self, scheduler, ingestor):
        ingestor.ingest.side_effect = RuntimeError("scryfall down")

        assert await scheduler._refresh_prices() is False


# ---------------------------------------------------------------------------
# Empty-catalog bootstrap
# ---------------------------------------------------------------------------


class TestAutoIngest:
    @pytest.mark.asyncio
    async def test_empty_catalog_triggers_ingest(self, scheduler, ingestor):
        assert await scheduler.auto_ingest_if_empty() is True
        ingestor.ingest.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_populated_catalog_skips_ingest(self, scheduler, ingestor, session_factory):
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

        assert await scheduler.auto_ingest_if_empty() is False
        ingestor.ingest.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flag_off(self, scheduler, ingestor, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_INGEST_ON_EMPTY", False)

        assert await scheduler.auto_ingest_if_empty() is False
        ingestor.ingest.assert_not_awaited()


# ---------------------------------------------------------------------------
# Loop lifecycle
# ---------------------------------------------------------------------------


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_dispatches_due_jobs_and_stops(
        self, scheduler, ingestor, watchlist_checker, monkeypatch
    ):
        monkeypatch.setattr(settings, "AUTO_INGEST_ON_EMPTY", False)
        monkeypatch.setattr(settings, "SCHEDULER_TICK_SECONDS", 0.01)
        scheduler._price_refresh_last_run = datetime.now(timezone.utc) - timedelta(days=2)
        scheduler._watchlist_last_check = datetime.now(timezone.utc) - timedelta(hours=2)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.1)
        await scheduler.shutdown()
        await asyncio.wait_for(task, timeout=2)

        # Each job ran exactly once; both clocks were reset
        ingestor.ingest.assert_awaited_once()
        watchlist_checker.evaluate_watch_entries.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_propagates(self, scheduler, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_INGEST_ON_EMPTY", False)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_watchlist_check_not_blocked_by_running_ingest(
        self, scheduler, ingestor, watchlist_checker, monkeypatch
    ):
        monkeypatch.setattr(settings, "SCHEDULER_TICK_SECONDS", 0.01)
        ingest_finished = asyncio.Event()

        async def slow_ingest(*args, **kwargs):
            await asyncio.sleep(1)
            ingest_finished.set()
            return IngestResult(items_processed=1, prices_updated=1)

        ingestor.ingest.side_effect = slow_ingest
        scheduler._watchlist_last_check = datetime.now(timezone.utc) - timedelta(hours=2)

        # Empty catalog, so run() starts the bootstrap ingest first
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.2)

        ingestor.ingest.assert_awaited_once()
        watchlist_checker.evaluate_watch_entries.assert_awaited_once()
        assert not ingest_finished.is_set()

        await scheduler.shutdown()
        await asyncio.wait_for(task, timeout=3)
        assert ingest_finished.is_set()
