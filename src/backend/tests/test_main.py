"""Tests for the health endpoints and application wiring."""

import pytest
from httpx import AsyncClient

from greenbro.core.config import ConfigurationError, Settings
from greenbro.main import build_runtime
from greenbro.services.health_service import HealthState, SweepStats


class TestHealthEndpoints:
    """Tests for /health and /health/live."""

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient):
        """Liveness does not depend on component health."""
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_before_first_sweep(self, client: AsyncClient):
        """Without a completed sweep the service reports degraded with 503."""
        response = await client.get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["mqtt"]["configured"] is False
        assert body["mqtt"]["healthy"] is True
        assert body["alertsEngine"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_health_ok(self, app, client: AsyncClient):
        """Both halves healthy gives 200."""
        health: HealthState = app.state.health
        health.record_sweep(SweepStats(evaluated=1), {"info": 0, "warning": 0, "critical": 0}, 3.0)

        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["alertsEngine"]["evaluated"] == 1
        assert body["alertsEngine"]["lastRunAt"] is not None


class TestBuildRuntime:
    """Tests for component wiring."""

    def test_invalid_metric_extensions(self, session_factory):
        """Malformed metric extensions fail startup."""
        settings = Settings(_env_file=None, metric_extensions={"bad": 42})
        with pytest.raises(ConfigurationError):
            build_runtime(settings, session_factory, HealthState())

    def test_topic_prefix_from_subscription(self, session_factory):
        """The normalizer's prefix follows the subscription pattern."""
        settings = Settings(_env_file=None, mqtt_telemetry_topic="heatpumps/+/+/telemetry", ingest_lanes=2)
        runtime = build_runtime(settings, session_factory, HealthState())

        assert runtime.ingestion.normalizer.topic_prefix == "heatpumps"
        assert runtime.lanes.num_lanes == 2

    def test_sweeper_lock_and_skew_wiring(self, session_factory):
        """Lock and future-skew settings reach the sweeper and normalizer."""
        settings = Settings(
            _env_file=None,
            worker_lock_ttl_seconds=90,
            ingest_max_future_skew_seconds=120,
        )
        runtime = build_runtime(settings, session_factory, HealthState())

        assert runtime.sweeper.lock.name == "offline_sweeper"
        assert runtime.sweeper.lock.ttl.total_seconds() == 90
        assert runtime.ingestion.normalizer.max_future_skew.total_seconds() == 120

    def test_sweeper_lock_can_be_disabled(self, session_factory):
        """Single-instance deployments may run without the lock."""
        settings = Settings(_env_file=None, worker_lock_enabled=False)
        assert build_runtime(settings, session_factory, HealthState()).sweeper.lock is None
