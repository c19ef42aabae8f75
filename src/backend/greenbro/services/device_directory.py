"""Device lookup by external id, with a short-lived cache."""

import time
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.models.device import Device

logger = structlog.get_logger()


@dataclass(frozen=True)
class DeviceRef:
    """Identity and ownership of a provisioned device."""

    id: uuid.UUID
    external_id: str
    org_id: uuid.UUID
    site_id: uuid.UUID | None

    @classmethod
    def from_model(cls, device: Device) -> "DeviceRef":
        return cls(
            id=device.id,
            external_id=device.external_id,
            org_id=device.organisation_id,
            site_id=device.site_id,
        )


class DeviceDirectory:
    """Resolves topic device ids to provisioned devices.

    Misses are cached as well as hits, so an unprovisioned device publishing
    every few seconds costs one query per TTL.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: float = 60.0,
        max_size: int = 10000,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._cache: dict[str, tuple[DeviceRef | None, float]] = {}
        self.hits = 0
        self.misses = 0

    async def resolve(self, external_id: str) -> DeviceRef | None:
        entry = self._cache.get(external_id)
        now = time.monotonic()
        if entry and now - entry[1] < self.ttl_seconds:
            self.hits += 1
            return entry[0]

        self.misses += 1
        async with self.session_factory() as db:
            result = await db.execute(select(Device).where(Device.external_id == external_id))
            device = result.scalar_one_or_none()

        ref = DeviceRef.from_model(device) if device else None
        if len(self._cache) >= self.max_size:
            self._evict(now)
        self._cache[external_id] = (ref, now)
        return ref

    def invalidate(self, external_id: str | None = None) -> None:
        if external_id is None:
            self._cache.clear()
        else:
            self._cache.pop(external_id, None)

    def _evict(self, now: float) -> None:
        expired = [key for key, (_, cached_at) in self._cache.items() if now - cached_at >= self.ttl_seconds]
        for key in expired:
            del self._cache[key]
        if len(self._cache) >= self.max_size:
            # Still full of live entries: drop the oldest
            oldest = min(self._cache, key=lambda key: self._cache[key][1])
            del self._cache[oldest]
