"""Health state shared by the ingest pipeline and alerts engine, and its reporter.

``HealthState`` is created once by the application and handed to every
component that reports into it. Nothing here is module-global, so tests
build a fresh instance per case.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from greenbro.core.clock import ensure_utc, isoformat, utcnow

MAX_ERROR_LENGTH = 200


def truncate_error(error: BaseException | str) -> str:
    return str(error)[:MAX_ERROR_LENGTH]


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class MqttHealth:
    """Transport and ingest counters."""

    configured: bool = False
    disabled: bool = False
    broker: str | None = None
    connected: bool = False
    last_connect_at: datetime | None = None
    last_disconnect_at: datetime | None = None
    last_message_at: datetime | None = None
    last_ingest_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    reconnect_attempts: int = 0
    received: int = 0
    accepted: int = 0
    dropped: int = 0
    failed: int = 0
    rejected: Counter = field(default_factory=Counter)


@dataclass
class SweepStats:
    """Outcome counts of one evaluation pass."""

    evaluated: int = 0
    triggered: int = 0
    cleared: int = 0
    skipped: int = 0

    def add(self, other: "SweepStats") -> None:
        self.evaluated += other.evaluated
        self.triggered += other.triggered
        self.cleared += other.cleared
        self.skipped += other.skipped


@dataclass
class AlertsEngineHealth:
    """Heartbeat of the offline sweeper plus message-path evaluation totals."""

    last_run_at: datetime | None = None
    last_duration_ms: float | None = None
    last_run_failed: bool = False
    rules_loaded: int = 0
    rules_skipped: int = 0
    last_sweep: SweepStats = field(default_factory=SweepStats)
    message_totals: SweepStats = field(default_factory=SweepStats)
    active_counts: dict[str, int] = field(default_factory=dict)
    # Another instance holds the sweeper lock
    standby: bool = False
    last_standby_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None

    @property
    def active_alerts_total(self) -> int:
        return sum(self.active_counts.values())


class HealthState:
    """Owned, injectable health state.

    Writers call the ``mark_*``/``record_*`` methods; the reporter only reads.
    All writers run on the same event loop.
    """

    def __init__(self) -> None:
        self.mqtt = MqttHealth()
        self.alerts_engine = AlertsEngineHealth()

    # Transport

    def configure_mqtt(self, configured: bool, disabled: bool, broker: str | None) -> None:
        self.mqtt.configured = configured
        self.mqtt.disabled = disabled
        self.mqtt.broker = broker

    def mark_connected(self, now: datetime | None = None) -> None:
        self.mqtt.connected = True
        self.mqtt.last_connect_at = now or utcnow()

    def mark_disconnected(self, error: BaseException | str | None = None, now: datetime | None = None) -> None:
        now = now or utcnow()
        was_connected = self.mqtt.connected
        self.mqtt.connected = False
        if was_connected:
            self.mqtt.last_disconnect_at = now
        if error is not None:
            self.mqtt.last_error = truncate_error(error)
            self.mqtt.last_error_at = now

    def mark_reconnect_attempt(self) -> None:
        self.mqtt.reconnect_attempts += 1

    def mark_message(self, now: datetime | None = None) -> None:
        self.mqtt.received += 1
        self.mqtt.last_message_at = now or utcnow()

    # Ingest

    def mark_ingest_success(self, now: datetime | None = None) -> None:
        self.mqtt.accepted += 1
        self.mqtt.last_ingest_at = now or utcnow()

    def mark_ingest_error(self, error: BaseException | str, now: datetime | None = None) -> None:
        """A snapshot was accepted but could not be stored."""
        self.mqtt.failed += 1
        self.record_error(error, now)

    def record_error(self, error: BaseException | str, now: datetime | None = None) -> None:
        self.mqtt.last_error = truncate_error(error)
        self.mqtt.last_error_at = now or utcnow()

    def record_rejection(self, reason: str) -> None:
        self.mqtt.rejected[reason] += 1

    def record_drop(self) -> None:
        self.mqtt.dropped += 1

    # Alerts engine

    def record_rules_loaded(self, loaded: int, skipped: int) -> None:
        self.alerts_engine.rules_loaded = loaded
        self.alerts_engine.rules_skipped = skipped

    def record_message_evaluation(self, stats: SweepStats) -> None:
        self.alerts_engine.message_totals.add(stats)

    def record_sweep(
        self,
        stats: SweepStats,
        active_counts: dict[str, int],
        duration_ms: float,
        now: datetime | None = None,
    ) -> None:
        engine = self.alerts_engine
        engine.last_run_at = now or utcnow()
        engine.last_duration_ms = round(duration_ms, 2)
        engine.last_run_failed = False
        engine.last_sweep = stats
        engine.active_counts = dict(active_counts)
        engine.standby = False

    def record_standby(self, now: datetime | None = None) -> None:
        """This instance checked the sweeper lock and another instance holds it."""
        self.alerts_engine.standby = True
        self.alerts_engine.last_standby_at = now or utcnow()

    def record_sweep_failure(self, error: BaseException | str, now: datetime | None = None) -> None:
        self.alerts_engine.last_run_failed = True
        self.record_alerts_error(error, now)

    def record_alerts_error(self, error: BaseException | str, now: datetime | None = None) -> None:
        self.alerts_engine.last_error = truncate_error(error)
        self.alerts_engine.last_error_at = now or utcnow()


class HealthReporter:
    """Read-only view over ``HealthState`` for the health endpoint."""

    def __init__(
        self,
        state: HealthState,
        ingest_stale_seconds: int = 300,
        alerts_stale_seconds: int = 300,
    ):
        self.state = state
        self.ingest_stale = timedelta(seconds=ingest_stale_seconds)
        self.alerts_stale = timedelta(seconds=alerts_stale_seconds)

    def mqtt_healthy(self, now: datetime) -> bool:
        mqtt = self.state.mqtt
        if mqtt.disabled or not mqtt.configured:
            return True
        if not mqtt.connected:
            return False

        last_ingest = ensure_utc(mqtt.last_ingest_at)
        if last_ingest is None:
            # Freshly connected, nothing received yet
            connected_at = ensure_utc(mqtt.last_connect_at)
            stale = connected_at is None or now - connected_at > self.ingest_stale
        else:
            stale = now - last_ingest > self.ingest_stale
        if stale:
            return False

        last_error = ensure_utc(mqtt.last_error_at)
        recent_error = (
            last_error is not None
            and now - last_error <= self.ingest_stale
            and (last_ingest is None or last_error >= last_ingest)
        )
        return not recent_error

    def alerts_healthy(self, now: datetime) -> bool:
        engine = self.state.alerts_engine
        if engine.standby:
            last_check = ensure_utc(engine.last_standby_at)
            return last_check is not None and now - last_check <= self.alerts_stale
        last_run = ensure_utc(engine.last_run_at)
        if last_run is None or engine.last_run_failed:
            return False
        return now - last_run <= self.alerts_stale

    def report(self, now: datetime | None = None) -> dict[str, Any]:
        """Build the ``mqtt`` and ``alertsEngine`` sections."""
        now = now or utcnow()
        mqtt = self.state.mqtt
        engine = self.state.alerts_engine
        counts = engine.active_counts

        mqtt_section = {
            "configured": mqtt.configured,
            "disabled": mqtt.disabled,
            "connected": mqtt.connected,
            "broker": mqtt.broker,
            "lastConnectAt": isoformat(mqtt.last_connect_at),
            "lastDisconnectAt": isoformat(mqtt.last_disconnect_at),
            "lastMessageAt": isoformat(mqtt.last_message_at),
            "lastIngestAt": isoformat(mqtt.last_ingest_at),
            "lastErrorAt": isoformat(mqtt.last_error_at),
            "lastError": mqtt.last_error,
            "reconnectAttempts": mqtt.reconnect_attempts,
            "counts": {
                "received": mqtt.received,
                "accepted": mqtt.accepted,
                "rejected": dict(mqtt.rejected),
                "dropped": mqtt.dropped,
                "failed": mqtt.failed,
            },
            "healthy": self.mqtt_healthy(now),
        }

        alerts_section = {
            "lastRunAt": isoformat(engine.last_run_at),
            "lastDurationMs": engine.last_duration_ms,
            "rulesLoaded": engine.rules_loaded,
            "rulesSkipped": engine.rules_skipped,
            "activeAlertsTotal": engine.active_alerts_total,
            "activeCritical": counts.get("critical", 0),
            "activeWarning": counts.get("warning", 0),
            "activeInfo": counts.get("info", 0),
            "evaluated": engine.last_sweep.evaluated,
            "triggered": engine.last_sweep.triggered,
            "cleared": engine.last_sweep.cleared,
            "skipped": engine.last_sweep.skipped,
            "messageEvaluated": engine.message_totals.evaluated,
            "messageTriggered": engine.message_totals.triggered,
            "messageCleared": engine.message_totals.cleared,
            "lastErrorAt": isoformat(engine.last_error_at),
            "standby": engine.standby,
            "lastError": engine.last_error,
            "healthy": self.alerts_healthy(now),
        }

        return {"mqtt": mqtt_section, "alertsEngine": alerts_section}

    def overall_status(self, now: datetime | None = None) -> HealthStatus:
        now = now or utcnow()
        checks = [self.mqtt_healthy(now), self.alerts_healthy(now)]
        if all(checks):
            return HealthStatus.HEALTHY
        if any(checks):
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY
