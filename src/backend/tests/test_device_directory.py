"""Tests for DeviceDirectory."""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from greenbro.models import Device
from greenbro.services.device_directory import DeviceDirectory


class TestDeviceDirectory:
    """Tests for cached device resolution."""

    @pytest.mark.asyncio
    async def test_resolves_provisioned_device(self, session_factory, test_device):
        """Known external ids resolve to the device and its ownership."""
        directory = DeviceDirectory(session_factory)

        ref = await directory.resolve("HP-0001")

        assert ref.id == test_device.id
        assert ref.org_id == test_device.organisation_id
        assert ref.site_id == test_device.site_id

    @pytest.mark.asyncio
    async def test_hits_are_cached(self, session_factory, test_device):
        """A second lookup inside the TTL does not query again."""
        directory = DeviceDirectory(session_factory, ttl_seconds=60)

        await directory.resolve("HP-0001")
        await directory.resolve("HP-0001")

        assert (directory.misses, directory.hits) == (1, 1)

    @pytest.mark.asyncio
    async def test_misses_are_cached_until_invalidated(self, db_session: AsyncSession, session_factory, org_id):
        """Unknown devices are remembered until the cache is invalidated."""
        directory = DeviceDirectory(session_factory, ttl_seconds=60)
        assert await directory.resolve("HP-NEW") is None

        db_session.add(Device(id=uuid.uuid4(), external_id="HP-NEW", organisation_id=org_id))
        await db_session.commit()
        assert await directory.resolve("HP-NEW") is None

        directory.invalidate("HP-NEW")
        assert await directory.resolve("HP-NEW") is not None

    @pytest.mark.asyncio
    async def test_full_cache_evicts_oldest(self, session_factory):
        """The cache never grows past its size bound."""
        directory = DeviceDirectory(session_factory, ttl_seconds=60, max_size=2)

        for external_id in ("a", "b", "c"):
            await directory.resolve(external_id)

        assert len(directory._cache) == 2
        assert "a" not in directory._cache
