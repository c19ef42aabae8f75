"""Tests for WorkerLockService."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from greenbro.models import WorkerLock
from greenbro.services.worker_lock_service import WorkerLockService

from conftest import T0

LOCK_NAME = "offline_sweeper"


@pytest.fixture
def first(session_factory) -> WorkerLockService:
    return WorkerLockService(session_factory, LOCK_NAME, ttl_seconds=60, owner_id="instance-a")


@pytest.fixture
def second(session_factory) -> WorkerLockService:
    return WorkerLockService(session_factory, LOCK_NAME, ttl_seconds=60, owner_id="instance-b")


async def _lock_row(session_factory) -> WorkerLock | None:
    async with session_factory() as db:
        result = await db.execute(select(WorkerLock).where(WorkerLock.name == LOCK_NAME))
        return result.scalar_one_or_none()


class TestAcquire:
    """Tests for taking the lease."""

    @pytest.mark.asyncio
    async def test_free_lock_is_acquired(self, session_factory, first):
        """The first instance to ask gets the lease."""
        assert await first.acquire(now=T0) is True
        assert first.held is True

        row = await _lock_row(session_factory)
        assert row.owner_id == "instance-a"

    @pytest.mark.asyncio
    async def test_held_lock_is_refused(self, session_factory, first, second):
        """A live lease held by another instance is not taken."""
        await first.acquire(now=T0)

        assert await second.acquire(now=T0 + timedelta(seconds=30)) is False
        assert second.held is False
        assert (await _lock_row(session_factory)).owner_id == "instance-a"

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, session_factory, first, second):
        """A lease nobody renewed passes to the next instance that asks."""
        await first.acquire(now=T0)

        assert await second.acquire(now=T0 + timedelta(seconds=61)) is True
        assert (await _lock_row(session_factory)).owner_id == "instance-b"

    @pytest.mark.asyncio
    async def test_owner_reacquire_extends(self, first, second):
        """Acquiring a lease we already hold pushes its expiry out."""
        await first.acquire(now=T0)
        assert await first.acquire(now=T0 + timedelta(seconds=50)) is True

        assert await second.acquire(now=T0 + timedelta(seconds=70)) is False

    def test_ttl_floor(self, session_factory):
        """Non-positive TTLs are raised to the minimum."""
        lock = WorkerLockService(session_factory, LOCK_NAME, ttl_seconds=0)
        assert lock.ttl.total_seconds() > 0
        assert lock.renew_interval_seconds == 5.0


class TestRenewAndRelease:
    """Tests for keeping and returning the lease."""

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self, first, second):
        """Renewal keeps other instances out past the original expiry."""
        await first.acquire(now=T0)

        assert await first.renew(now=T0 + timedelta(seconds=30)) is True
        assert await second.acquire(now=T0 + timedelta(seconds=80)) is False

    @pytest.mark.asyncio
    async def test_renew_after_takeover_reports_loss(self, first, second):
        """An instance whose lease was taken learns it on renewal."""
        await first.acquire(now=T0)
        await second.acquire(now=T0 + timedelta(seconds=61))

        assert await first.renew(now=T0 + timedelta(seconds=62)) is False
        assert first.held is False

    @pytest.mark.asyncio
    async def test_release_frees_lock(self, session_factory, first, second):
        """A released lease is immediately available."""
        await first.acquire(now=T0)
        await first.release()

        assert first.held is False
        assert await _lock_row(session_factory) is None
        assert await second.acquire(now=T0 + timedelta(seconds=1)) is True

    @pytest.mark.asyncio
    async def test_release_by_non_owner_is_noop(self, session_factory, first, second):
        """Only the owner can delete its lease."""
        await first.acquire(now=T0)
        await second.release()

        assert (await _lock_row(session_factory)).owner_id == "instance-a"
