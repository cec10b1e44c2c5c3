"""
Card Engine — Leader Lock for Scheduled Jobs

Every service instance runs the same timers. Before a job runs, the instance
tries to take a named lock from the shared database:

- Non-blocking: if another instance holds it, with_lock() returns False at once.
- Crash-safe: a dead holder never keeps the lock. PostgreSQL advisory locks
  die with the session; lease rows expire once the heartbeat stops.
- Always released: the job runs inside try/finally.

Lock ids are fixed integers. Adding a job means adding an entry to LOCK_IDS.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from card_engine.config import JobName, settings
from card_engine.models.base import upsert_insert
from card_engine.models.job_lease import JobLease

logger = structlog.get_logger(__name__)

LOCK_IDS: dict[str, int] = {
    JobName.PRICE_REFRESH.value: 100_001,
    JobName.WATCHLIST_CHECK.value: 100_002,
}


def job_key(job_name: str) -> str:
    """Plain string form of a job name, whether passed as JobName or str."""
    return job_name.value if isinstance(job_name, JobName) else job_name


def lock_id_for(job_name: str) -> int:
    """Map a job name to its lock id. Unknown names raise KeyError."""
    key = job_key(job_name)
    try:
        return LOCK_IDS[key]
    except KeyError:
        raise KeyError(f"No leader lock id registered for job {key!r}") from None


class LockHandle:
    """Proof of ownership returned by try_acquire(), consumed by release()."""

    def __init__(
        self,
        job_name: str,
        lock_id: int,
        connection: AsyncConnection | None = None,
        holder: str | None = None,
        heartbeat: asyncio.Task[None] | None = None,
    ):
        self.job_name = job_name
        self.lock_id = lock_id
        self.connection = connection
        self.holder = holder
        self.heartbeat = heartbeat

    def __repr__(self) -> str:
        return f"<LockHandle job={self.job_name!r} lock_id={self.lock_id}>"


class LeaderLock(ABC):
    """Named, non-blocking mutual exclusion shared by all instances."""

    @abstractmethod
    async def try_acquire(self, job_name: str) -> LockHandle | None:
        """Take the lock if free. Returns None when another holder has it."""
        raise NotImplementedError

    @abstractmethod
    async def release(self, handle: LockHandle) -> None:
        raise NotImplementedError

    async def with_lock(self, job_name: str, job: Callable[[], Awaitable[Any]]) -> bool:
        """
        Run `job` only if this instance wins the lock.

        Returns:
            True if the job ran here, False if another instance holds the lock.

        Exceptions from `job` propagate after the lock is released.
        """
        lock_id = lock_id_for(job_name)
        handle = await self.try_acquire(job_name)
        if handle is None:
            logger.info("leader_lock_held_elsewhere", job=job_key(job_name), lock_id=lock_id)
            return False

        logger.info("leader_lock_acquired", job=job_key(job_name), lock_id=lock_id)
        try:
            await job()
            return True
        finally:
            await self.release(handle)
            logger.info("leader_lock_released", job=job_key(job_name), lock_id=lock_id)


# ---------------------------------------------------------------------------
# PostgreSQL advisory lock
# ---------------------------------------------------------------------------


class PostgresAdvisoryLock(LeaderLock):
    """
    pg_try_advisory_lock on a dedicated connection.

    Advisory locks belong to the session that took them, so the same
    connection is held from acquire to release instead of going back to the
    pool mid-job. The connection runs in autocommit so it never sits idle in
    an open transaction for the length of the job.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine.execution_options(isolation_level="AUTOCOMMIT")

    async def try_acquire(self, job_name: str) -> LockHandle | None:
        lock_id = lock_id_for(job_name)
        conn = await self.engine.connect()
        try:
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
            )
            acquired = bool(result.scalar())
        except BaseException:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return None
        return LockHandle(job_key(job_name), lock_id, connection=conn)

    async def release(self, handle: LockHandle) -> None:
        conn = handle.connection
        assert conn is not None, "Advisory lock handle has no connection"
        try:
            await conn.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": handle.lock_id}
            )
        except Exception as e:
            # Drop the session instead of pooling it; the server frees its locks
            logger.error(
                "leader_lock_unlock_failed",
                job=handle.job_name,
                lock_id=handle.lock_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await conn.invalidate()
        finally:
            await conn.close()


# ---------------------------------------------------------------------------
# Lease-row lock (databases without advisory locks)
# ---------------------------------------------------------------------------


class LeaseLock(LeaderLock):
    """
    Lock backed by a row in job_leases with an expiring lease.

    Acquire is a single upsert that only overwrites an expired lease. While
    held, a heartbeat task pushes expires_at forward every ttl/3 seconds.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds or settings.LEASE_TTL_SECONDS)

    async def try_acquire(self, job_name: str) -> LockHandle | None:
        lock_id = lock_id_for(job_name)
        holder = uuid.uuid4().hex
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            async with session.begin():
                stmt = upsert_insert(session, JobLease).values(
                    lock_id=lock_id,
                    job_name=job_key(job_name),
                    holder=holder,
                    acquired_at=now,
                    expires_at=now + self.ttl,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["lock_id"],
                    set_={
                        "job_name": stmt.excluded.job_name,
                        "holder": stmt.excluded.holder,
                        "acquired_at": stmt.excluded.acquired_at,
                        "expires_at": stmt.excluded.expires_at,
                    },
                    where=JobLease.expires_at <= now,
                )
                await session.execute(stmt)
                current = await session.scalar(
                    select(JobLease.holder).where(JobLease.lock_id == lock_id)
                )

        if current != holder:
            return None

        heartbeat = asyncio.create_task(self._heartbeat(lock_id, holder))
        return LockHandle(job_key(job_name), lock_id, holder=holder, heartbeat=heartbeat)

    async def _heartbeat(self, lock_id: int, holder: str) -> None:
        interval = self.ttl.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(
                            update(JobLease)
                            .where(JobLease.lock_id == lock_id, JobLease.holder == holder)
                            .values(expires_at=datetime.now(timezone.utc) + self.ttl)
                        )
            except Exception as e:
                logger.warning(
                    "leader_lock_heartbeat_failed",
                    lock_id=lock_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def release(self, handle: LockHandle) -> None:
        if handle.heartbeat is not None:
            handle.heartbeat.cancel()
            try:
                await handle.heartbeat
            except asyncio.CancelledError:
                pass

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(JobLease).where(
                        JobLease.lock_id == handle.lock_id,
                        JobLease.holder == handle.holder,
                    )
                )


def build_leader_lock(
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> LeaderLock:
    """Advisory locks on PostgreSQL, lease rows anywhere else."""
    if engine.dialect.name == "postgresql":
        return PostgresAdvisoryLock(engine)
    logger.warning("leader_lock_using_lease_backend", dialect=engine.dialect.name)
    return LeaseLock(session_factory)
