"""Database lease that keeps a background worker to one running instance.

Every replica starts the worker, but only the one holding the named lease
does the work. A lease nobody renews expires after its TTL, so a crashed
holder is replaced on another instance's next attempt.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core.clock import utcnow
from greenbro.core.deps import insert_for
from greenbro.models.worker_lock import WorkerLock

logger = structlog.get_logger()

MIN_TTL_SECONDS = 0.05
MIN_RENEW_INTERVAL_SECONDS = 5.0


class WorkerLockService:
    """Acquire, renew and release one named lease for this process."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        ttl_seconds: float = 60.0,
        owner_id: str | None = None,
    ):
        self.session_factory = session_factory
        self.name = name
        self.owner_id = owner_id or uuid.uuid4().hex
        self.ttl = timedelta(seconds=max(MIN_TTL_SECONDS, ttl_seconds))
        self.held = False

    @property
    def renew_interval_seconds(self) -> float:
        return max(MIN_RENEW_INTERVAL_SECONDS, self.ttl.total_seconds() / 2)

    async def acquire(self, now: datetime | None = None) -> bool:
        """Take the lease if it is free, expired or already ours."""
        now = now or utcnow()
        table = WorkerLock.__table__
        async with self.session_factory() as db:
            async with db.begin():
                insert = insert_for(db)
                stmt = insert(table).values(
                    name=self.name,
                    owner_id=self.owner_id,
                    locked_at=now,
                    expires_at=now + self.ttl,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["name"],
                    set_={
                        "owner_id": stmt.excluded.owner_id,
                        "locked_at": stmt.excluded.locked_at,
                        "expires_at": stmt.excluded.expires_at,
                    },
                    where=or_(table.c.expires_at < now, table.c.owner_id == self.owner_id),
                )
                result = await db.execute(stmt)

        acquired = result.rowcount == 1
        if acquired and not self.held:
            logger.info("Worker lock acquired", lock=self.name, owner_id=self.owner_id)
        self.held = acquired
        return acquired

    async def renew(self, now: datetime | None = None) -> bool:
        """Extend a lease we hold. ``False`` means it was lost."""
        now = now or utcnow()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(WorkerLock)
                        .where(WorkerLock.name == self.name, WorkerLock.owner_id == self.owner_id)
                        .values(locked_at=now, expires_at=now + self.ttl)
                    )
        except SQLAlchemyError:
            self.held = False
            raise

        self.held = result.rowcount == 1
        if not self.held:
            logger.error("Worker lock lost", lock=self.name, owner_id=self.owner_id)
        return self.held

    async def release(self) -> None:
        """Drop the lease if we hold it so another instance can take over at once."""
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    delete(WorkerLock).where(
                        WorkerLock.name == self.name,
                        WorkerLock.owner_id == self.owner_id,
                    )
                )
        self.held = False
        logger.info("Worker lock released", lock=self.name, owner_id=self.owner_id)
