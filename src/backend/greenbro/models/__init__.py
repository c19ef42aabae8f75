"""Database models."""

from greenbro.models.base import Base, TimestampMixin
from greenbro.models.device import Device
from greenbro.models.telemetry import TelemetryPoint, LatestSnapshot
from greenbro.models.alert_rule import AlertRuleRow
from greenbro.models.alert import AlertInstance, AlertSeverity, AlertStatus, AlertType
from greenbro.models.worker_lock import WorkerLock

__all__ = [
    "Base",
    "TimestampMixin",
    "Device",
    "TelemetryPoint",
    "LatestSnapshot",
    "AlertRuleRow",
    "AlertInstance",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "WorkerLock",
]
