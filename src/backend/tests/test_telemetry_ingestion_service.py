"""Tests for TelemetryIngestionService."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from greenbro.models import AlertInstance, Device
from greenbro.services.alert_rule_evaluation_service import RuleEvaluator
from greenbro.services.alert_rules import RuleCache
from greenbro.services.device_directory import DeviceDirectory
from greenbro.services.message_normalizer import MessageNormalizer
from greenbro.services.snapshot_store import SnapshotStore, SnapshotStoreError
from greenbro.services.telemetry_ingestion_service import IngestStatus, TelemetryIngestionService

from conftest import T0

TOPIC = "greenbro/site-1/HP-0001/telemetry"


def _payload(ts, **sensor) -> bytes:
    return json.dumps({"ts": ts.isoformat(), "sensor": sensor}).encode("utf-8")


@pytest.fixture
def pipeline(session_factory, health):
    """Normalizer, store and evaluator wired as in the application."""
    normalizer = MessageNormalizer(DeviceDirectory(session_factory))
    store = SnapshotStore(session_factory, retry_delay=0)
    rule_cache = RuleCache(session_factory, health=health)
    evaluator = RuleEvaluator(session_factory, rule_cache, health=health)
    return TelemetryIngestionService(normalizer, store, evaluator=evaluator, health=health)


class TestTelemetryIngestion:
    """End-to-end processing of single messages."""

    @pytest.mark.asyncio
    async def test_valid_message_is_stored_and_evaluated(self, session_factory, pipeline, health, make_rule, test_device):
        """A breaching reading is persisted and raises an alert."""
        await make_rule(threshold=60.0)

        result = await pipeline.process(TOPIC, _payload(T0, supply_temperature_c=65.0), received_at=T0)

        assert result.status is IngestStatus.ACCEPTED
        assert result.append.points_written == 1
        assert result.evaluation.triggered == 1
        assert health.mqtt.accepted == 1
        assert health.mqtt.last_ingest_at is not None

    @pytest.mark.asyncio
    async def test_malformed_message_does_not_block_next(self, pipeline, health, test_device):
        """Garbage is rejected and the following message is still accepted."""
        bad = await pipeline.process(TOPIC, b"{not json")
        good = await pipeline.process(TOPIC, _payload(T0, supply_temperature_c=40.0))

        assert bad.status is IngestStatus.REJECTED
        assert good.status is IngestStatus.ACCEPTED
        assert health.mqtt.rejected["invalid_json"] == 1
        assert health.mqtt.last_error.startswith("invalid_json")
        assert health.mqtt.failed == 0

    @pytest.mark.asyncio
    async def test_unknown_device_is_rejected(self, pipeline, health, test_device):
        """Unprovisioned devices are counted, not stored."""
        result = await pipeline.process("greenbro/site-1/HP-9999/telemetry", _payload(T0, cop=3.0))

        assert result.status is IngestStatus.REJECTED
        assert health.mqtt.rejected["unknown_device"] == 1
        assert health.mqtt.last_error is None

    @pytest.mark.asyncio
    async def test_out_of_order_snapshot_is_not_evaluated(
        self, session_factory, pipeline, make_rule, test_device
    ):
        """An older breaching reading does not change alert state."""
        await make_rule(threshold=60.0)
        await pipeline.process(TOPIC, _payload(T0 + timedelta(minutes=5), supply_temperature_c=40.0))

        result = await pipeline.process(TOPIC, _payload(T0, supply_temperature_c=90.0))

        assert result.status is IngestStatus.ACCEPTED
        assert result.append.latest_applied is False
        assert result.evaluation is None
        async with session_factory() as db:
            alerts = (await db.execute(select(AlertInstance))).scalars().all()
        assert alerts == []

    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self, pipeline, health, test_device):
        """A snapshot that cannot be stored is counted as failed."""
        pipeline.store.append = AsyncMock(side_effect=SnapshotStoreError("disk full"))
        pipeline.evaluator = AsyncMock()

        result = await pipeline.process(TOPIC, _payload(T0, cop=3.0))

        assert result.status is IngestStatus.FAILED
        assert health.mqtt.failed == 1
        assert health.mqtt.last_error == "disk full"
        pipeline.evaluator.evaluate_snapshot.assert_not_called()

    @pytest.mark.asyncio
    async def test_evaluation_failure_keeps_message_accepted(self, pipeline, health, test_device):
        """Alerting errors never turn an accepted message into a failure."""
        pipeline.evaluator = AsyncMock()
        pipeline.evaluator.evaluate_snapshot.side_effect = RuntimeError("rules unavailable")

        result = await pipeline.process(TOPIC, _payload(T0, cop=3.0))

        assert result.status is IngestStatus.ACCEPTED
        assert health.alerts_engine.last_error == "rules unavailable"

    @pytest.mark.asyncio
    async def test_oversized_integer_is_counted(self, pipeline, health, test_device):
        """A reading too large for a float is dropped from the snapshot, not raised."""
        payload = b'{"ts": ' + b"9" * 400 + b', "sensor": {"cop": ' + b"9" * 400 + b', "supply_temperature_c": 41.0}}'

        result = await pipeline.process(TOPIC, payload, received_at=T0)

        assert result.status is IngestStatus.ACCEPTED
        assert result.snapshot.ts == T0
        assert result.snapshot.metrics == {"supply_temp": 41.0}
        assert result.snapshot.invalid_fields == ("sensor.cop",)
        assert health.mqtt.accepted == 1

    @pytest.mark.asyncio
    async def test_future_dated_message_does_not_silence_device(
        self, session_factory, pipeline, make_rule, test_device
    ):
        """A far-future timestamp is stored at ingest time, so later readings still alert."""
        await make_rule(threshold=60.0)
        await pipeline.process(
            TOPIC, _payload(T0.replace(year=2100), supply_temperature_c=40.0), received_at=T0
        )

        later = T0 + timedelta(minutes=1)
        result = await pipeline.process(TOPIC, _payload(later, supply_temperature_c=90.0), received_at=later)

        assert result.append.latest_applied is True
        assert result.evaluation.triggered == 1
        async with session_factory() as db:
            device = await db.get(Device, test_device.id)
        assert device.last_seen_at.replace(tzinfo=None) == later.replace(tzinfo=None)
