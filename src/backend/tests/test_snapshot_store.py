"""Tests for the snapshot store."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from greenbro.core.clock import ensure_utc
from greenbro.models import Device, TelemetryPoint
from greenbro.services.message_normalizer import DeviceSnapshot
from greenbro.services.snapshot_store import AppendResult, SnapshotStore, SnapshotStoreError

from conftest import T0


def _snapshot(device_ref, ts, metrics=None, raw=None) -> DeviceSnapshot:
    metrics = {"supply_temp": 45.0, "power_kw": 1.2} if metrics is None else metrics
    return DeviceSnapshot(
        device=device_ref,
        ts=ts,
        metrics=metrics,
        raw=raw if raw is not None else {"sensor": dict(metrics)},
        received_at=ts,
    )


async def _point_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(TelemetryPoint))).scalar_one()


async def _last_seen(session_factory, device_id):
    async with session_factory() as db:
        device = await db.get(Device, device_id)
        return ensure_utc(device.last_seen_at)


class TestSnapshotStoreAppend:
    """Tests for SnapshotStore.append."""

    @pytest.mark.asyncio
    async def test_append_writes_points_latest_and_last_seen(self, session_factory, device_ref):
        """One snapshot writes a point per metric, the latest row and last_seen_at."""
        store = SnapshotStore(session_factory)

        result = await store.append(_snapshot(device_ref, T0))

        assert result == AppendResult(points_written=2, latest_applied=True)
        assert await _point_count(session_factory) == 2
        latest = await store.get_latest(device_ref.id)
        assert ensure_utc(latest.ts) == T0
        assert latest.metrics == {"supply_temp": 45.0, "power_kw": 1.2}
        assert await _last_seen(session_factory, device_ref.id) == T0

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, session_factory, device_ref):
        """The same (device, metric, ts) is stored once."""
        store = SnapshotStore(session_factory)
        snapshot = _snapshot(device_ref, T0)

        await store.append(snapshot)
        second = await store.append(snapshot)

        assert second.points_written == 0
        assert await _point_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_out_of_order_snapshot_keeps_newer_latest(self, session_factory, device_ref):
        """An older snapshot adds points but does not replace the latest row."""
        store = SnapshotStore(session_factory)
        newer = T0 + timedelta(minutes=5)

        await store.append(_snapshot(device_ref, newer, {"supply_temp": 50.0}))
        result = await store.append(_snapshot(device_ref, T0, {"supply_temp": 40.0}))

        assert result.latest_applied is False
        assert result.points_written == 1
        latest = await store.get_latest(device_ref.id)
        assert ensure_utc(latest.ts) == newer
        assert latest.metrics == {"supply_temp": 50.0}
        assert await _last_seen(session_factory, device_ref.id) == newer

    @pytest.mark.asyncio
    async def test_equal_timestamp_replaces_latest(self, session_factory, device_ref):
        """A snapshot with the same timestamp still becomes the latest."""
        store = SnapshotStore(session_factory)

        await store.append(_snapshot(device_ref, T0, {"supply_temp": 40.0}))
        result = await store.append(_snapshot(device_ref, T0, {"return_temp": 30.0}))

        assert result.latest_applied is True
        latest = await store.get_latest(device_ref.id)
        assert latest.metrics == {"return_temp": 30.0}

    @pytest.mark.asyncio
    async def test_empty_metrics_update_liveness_only(self, session_factory, device_ref):
        """A heartbeat without readings writes no points but advances last_seen_at."""
        store = SnapshotStore(session_factory)

        result = await store.append(_snapshot(device_ref, T0, {}))

        assert result.points_written == 0
        assert result.latest_applied is True
        assert await _point_count(session_factory) == 0
        assert await _last_seen(session_factory, device_ref.id) == T0

    @pytest.mark.asyncio
    async def test_get_latest_unknown_device(self, session_factory, device_ref):
        """No snapshot yet gives None."""
        store = SnapshotStore(session_factory)
        assert await store.get_latest(device_ref.id) is None


class TestSnapshotStoreRetries:
    """Tests for retry behaviour on storage errors."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, session_factory, device_ref):
        """A transient failure is retried."""
        store = SnapshotStore(session_factory, max_attempts=3, retry_delay=0)
        expected = AppendResult(points_written=2, latest_applied=True)
        store._write = AsyncMock(
            side_effect=[OperationalError("INSERT", {}, Exception("database is locked")), expected]
        )

        result = await store.append(_snapshot(device_ref, T0))

        assert result == expected
        assert store._write.await_count == 2

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self, session_factory, device_ref):
        """Persistent failures surface as SnapshotStoreError."""
        store = SnapshotStore(session_factory, max_attempts=2, retry_delay=0)
        store._write = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(SnapshotStoreError) as exc_info:
            await store.append(_snapshot(device_ref, T0))

        assert "2 attempts" in str(exc_info.value)
        assert store._write.await_count == 2
