"""Prometheus metrics instrumentation for the ingest and alerting core."""

from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

# Transport
mqtt_connected = Gauge(
    "greenbro_mqtt_connected",
    "Whether the broker connection is up (1=connected, 0=disconnected)",
)

mqtt_reconnects_total = Counter(
    "greenbro_mqtt_reconnects_total",
    "Broker reconnect attempts",
)

# Ingest
messages_received_total = Counter(
    "greenbro_messages_received_total",
    "Messages handed over by the transport",
)

messages_rejected_total = Counter(
    "greenbro_messages_rejected_total",
    "Messages rejected by the normalizer",
    ["reason"],
)

messages_dropped_total = Counter(
    "greenbro_messages_dropped_total",
    "Messages dropped because the device lane queue was full",
)

messages_persisted_total = Counter(
    "greenbro_messages_persisted_total",
    "Snapshots written to the store",
)

messages_failed_total = Counter(
    "greenbro_messages_failed_total",
    "Snapshots dropped after exhausting store retries",
)

lane_queue_depth = Gauge(
    "greenbro_lane_queue_depth",
    "Messages waiting in a device lane",
    ["lane"],
)

# Alerts engine
rule_evaluations_total = Counter(
    "greenbro_rule_evaluations_total",
    "Rule evaluations by outcome",
    ["outcome"],
)

malformed_rules_total = Counter(
    "greenbro_malformed_rules_total",
    "Rules skipped at load time because they are malformed",
)

sweep_duration = Histogram(
    "greenbro_offline_sweep_seconds",
    "Time spent in one offline sweep",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

active_alerts = Gauge(
    "greenbro_active_alerts",
    "Active alert instances",
    ["severity"],
)


def setup_metrics(app) -> Instrumentator:
    """Instrument the FastAPI app and expose /metrics."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/health/live", "/metrics"],
    )
    instrumentator.instrument(app)
    instrumentator.expose(app, include_in_schema=False)
    return instrumentator


# Helper functions for updating custom metrics


def set_mqtt_connected(connected: bool) -> None:
    mqtt_connected.set(1 if connected else 0)


def record_rejection(reason: str) -> None:
    messages_rejected_total.labels(reason=reason).inc()


def record_rule_outcome(outcome: str) -> None:
    rule_evaluations_total.labels(outcome=outcome).inc()


def set_lane_depth(lane: int, depth: int) -> None:
    lane_queue_depth.labels(lane=str(lane)).set(depth)


def set_active_alerts(counts: dict[str, int]) -> None:
    """Set active alert gauges from a severity -> count mapping."""
    for severity, count in counts.items():
        active_alerts.labels(severity=severity).set(count)
