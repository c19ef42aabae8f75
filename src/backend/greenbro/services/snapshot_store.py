"""Persists accepted snapshots as telemetry points and as the device's latest state."""

import asyncio
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core.clock import ensure_utc, utcnow
from greenbro.core.deps import insert_for
from greenbro.models.device import Device
from greenbro.models.telemetry import LatestSnapshot, TelemetryPoint
from greenbro.services.message_normalizer import DeviceSnapshot

logger = structlog.get_logger()


class SnapshotStoreError(Exception):
    """Raised when a snapshot could not be written after all retries."""


@dataclass(frozen=True)
class AppendResult:
    points_written: int
    latest_applied: bool


class SnapshotStore:
    """Writes a snapshot's points, latest row and last-seen in one transaction.

    Point inserts ignore (device, metric, ts) conflicts. The latest row and
    ``Device.last_seen_at`` only move forward in time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        retry_delay: float = 0.2,
    ):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def append(self, snapshot: DeviceSnapshot) -> AppendResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._write(snapshot)
            except (SQLAlchemyError, OSError) as e:
                if attempt >= self.max_attempts:
                    raise SnapshotStoreError(
                        f"Snapshot write failed after {attempt} attempts: {e}"
                    ) from e
                logger.warning(
                    "Snapshot write failed, retrying",
                    device_id=str(snapshot.device_id),
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.retry_delay * attempt)

    async def _write(self, snapshot: DeviceSnapshot) -> AppendResult:
        ts = ensure_utc(snapshot.ts)
        now = utcnow()
        device_id = snapshot.device_id

        async with self.session_factory() as db:
            async with db.begin():
                insert = insert_for(db)

                points_written = 0
                if snapshot.metrics:
                    rows = [
                        {
                            "device_id": device_id,
                            "metric": metric,
                            "ts": ts,
                            "value": value,
                            "quality": "good",
                            "created_at": now,
                        }
                        for metric, value in snapshot.metrics.items()
                    ]
                    stmt = insert(TelemetryPoint.__table__).values(rows).on_conflict_do_nothing(
                        index_elements=["device_id", "metric", "ts"]
                    )
                    result = await db.execute(stmt)
                    points_written = result.rowcount if result.rowcount >= 0 else len(rows)

                stmt = insert(LatestSnapshot.__table__).values(
                    device_id=device_id,
                    ts=ts,
                    metrics=dict(snapshot.metrics),
                    raw=snapshot.raw,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["device_id"],
                    set_={
                        "ts": stmt.excluded.ts,
                        "metrics": stmt.excluded.metrics,
                        "raw": stmt.excluded.raw,
                        "updated_at": stmt.excluded.updated_at,
                    },
                    where=LatestSnapshot.__table__.c.ts <= stmt.excluded.ts,
                )
                result = await db.execute(stmt)
                latest_applied = result.rowcount == 1

                await db.execute(
                    update(Device)
                    .where(
                        Device.id == device_id,
                        or_(Device.last_seen_at.is_(None), Device.last_seen_at < ts),
                    )
                    .values(last_seen_at=ts)
                )

        if not latest_applied:
            logger.debug(
                "Out-of-order snapshot kept out of latest state",
                device_id=str(device_id),
                ts=ts.isoformat(),
            )
        return AppendResult(points_written=points_written, latest_applied=latest_applied)

    async def get_latest(self, device_id: uuid.UUID) -> LatestSnapshot | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(LatestSnapshot).where(LatestSnapshot.device_id == device_id)
            )
            return result.scalar_one_or_none()
