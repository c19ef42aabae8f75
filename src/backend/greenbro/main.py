"""Application entry point: wires the ingest pipeline and alerts engine into a FastAPI app."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core.config import ConfigurationError, Settings, get_settings, validate_startup_settings
from greenbro.core.deps import create_engine, create_session_factory
from greenbro.core.logging import configure_logging
from greenbro.services.alert_rule_evaluation_service import RuleEvaluator
from greenbro.services.alert_rules import RuleCache
from greenbro.services.device_directory import DeviceDirectory
from greenbro.services.health_service import HealthReporter, HealthState, HealthStatus
from greenbro.services.message_normalizer import MessageNormalizer, MetricTable
from greenbro.services.mqtt_service import MQTTConnectionManager
from greenbro.services.offline_sweeper_service import OfflineSweeperService
from greenbro.services.snapshot_store import SnapshotStore
from greenbro.services.telemetry_ingestion_service import TelemetryIngestionService
from greenbro.services.telemetry_worker_service import DeviceLaneDispatcher
from greenbro.services.worker_lock_service import WorkerLockService

logger = structlog.get_logger()

VERSION = "0.1.0"
OFFLINE_SWEEPER_LOCK = "offline_sweeper"


@dataclass
class Runtime:
    """Every long-lived component, built once per process."""

    settings: Settings
    health: HealthState
    rule_cache: RuleCache
    ingestion: TelemetryIngestionService
    lanes: DeviceLaneDispatcher
    transport: MQTTConnectionManager
    sweeper: OfflineSweeperService

    async def start(self) -> None:
        settings = self.settings
        await self.lanes.start()
        await self.transport.subscribe(settings.mqtt_telemetry_topic, self.lanes.submit)

        if settings.mqtt_configured:
            await self.transport.connect(
                settings.mqtt_url,
                username=settings.mqtt_username or None,
                password=settings.mqtt_password or None,
            )
        else:
            logger.warning(
                "MQTT transport not configured, telemetry ingest is idle",
                disabled=settings.mqtt_disabled,
            )
        await self.sweeper.start()

    async def stop(self) -> None:
        # Stop accepting, drain the lanes, then close the connection
        await self.transport.shutdown(
            drain=partial(self.lanes.stop, self.settings.ingest_shutdown_grace_seconds)
        )
        await self.sweeper.stop()


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    health: HealthState,
) -> Runtime:
    try:
        metric_table = MetricTable.with_extensions(settings.metric_extensions)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    directory = DeviceDirectory(session_factory, ttl_seconds=settings.device_cache_ttl_seconds)
    normalizer = MessageNormalizer(
        directory,
        topic_prefix=settings.mqtt_topic_prefix,
        metric_table=metric_table,
        max_future_skew_seconds=settings.ingest_max_future_skew_seconds,
    )
    store = SnapshotStore(
        session_factory,
        max_attempts=settings.ingest_store_retries,
        retry_delay=settings.ingest_store_retry_delay_seconds,
    )
    rule_cache = RuleCache(
        session_factory,
        refresh_seconds=settings.alerts_rule_refresh_seconds,
        offline_grace_default=settings.offline_grace_default_seconds,
        health=health,
    )
    evaluator = RuleEvaluator(session_factory, rule_cache, health=health)
    ingestion = TelemetryIngestionService(normalizer, store, evaluator=evaluator, health=health)
    lanes = DeviceLaneDispatcher(
        ingestion.process,
        num_lanes=settings.ingest_lanes,
        queue_size=settings.ingest_queue_size,
        enqueue_timeout=settings.ingest_enqueue_timeout_seconds,
        health=health,
    )
    transport = MQTTConnectionManager(
        health=health,
        client_id=settings.mqtt_client_id,
        reconnect_base=settings.mqtt_reconnect_base_seconds,
        reconnect_max=settings.mqtt_reconnect_max_seconds,
        connect_timeout=settings.mqtt_connect_timeout_seconds,
    )
    sweeper_lock = None
    if settings.worker_lock_enabled:
        sweeper_lock = WorkerLockService(
            session_factory,
            OFFLINE_SWEEPER_LOCK,
            ttl_seconds=settings.worker_lock_ttl_seconds,
        )
    sweeper = OfflineSweeperService(
        session_factory,
        rule_cache,
        evaluator,
        health=health,
        interval_seconds=settings.alerts_sweep_interval_seconds,
        failure_cooldown_seconds=settings.alerts_failure_cooldown_seconds,
        lock=sweeper_lock,
    )
    return Runtime(
        settings=settings,
        health=health,
        rule_cache=rule_cache,
        ingestion=ingestion,
        lanes=lanes,
        transport=transport,
        sweeper=sweeper,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, settings.log_json)
    validate_startup_settings(settings)

    logger.info("Starting telemetry core", environment=settings.environment)
    engine = create_engine(settings.database_url, echo=settings.debug)
    session_factory = create_session_factory(engine)

    health: HealthState = app.state.health
    health.configure_mqtt(
        configured=settings.mqtt_configured,
        disabled=settings.mqtt_disabled,
        broker=None,
    )
    runtime = build_runtime(settings, session_factory, health)
    app.state.runtime = runtime
    await runtime.start()

    yield

    logger.info("Shutting down telemetry core")
    await runtime.stop()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.health = HealthState()
    app.state.health_reporter = HealthReporter(
        app.state.health,
        ingest_stale_seconds=settings.ingest_stale_seconds,
        alerts_stale_seconds=settings.alerts_stale_seconds,
    )

    @app.get("/health")
    async def health_check(request: Request) -> JSONResponse:
        """Ingest and alerts engine status; 503 unless both are healthy."""
        reporter: HealthReporter = request.app.state.health_reporter
        status = reporter.overall_status()
        body = {"status": status.value, "version": VERSION, **reporter.report()}
        return JSONResponse(
            status_code=200 if status is HealthStatus.HEALTHY else 503,
            content=body,
        )

    @app.get("/health/live")
    async def liveness_check() -> dict:
        """Liveness check - the process is up and serving."""
        return {"status": HealthStatus.HEALTHY.value, "version": VERSION}

    if settings.metrics_enabled:
        from greenbro.core.metrics import setup_metrics

        setup_metrics(app)

    return app


fastapi_app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("greenbro.main:fastapi_app", host=settings.host, port=settings.port)
