"""Turns a telemetry topic + payload into a canonical DeviceSnapshot.

Raw vendor field names are translated through a declarative mapping table;
each entry owns its unit conversion. Only fields present in the payload
produce metrics. A missing reading stays missing, it is never zero.
"""

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol

import structlog
from dateutil import parser as dtparser

from greenbro.core.clock import utcnow
from greenbro.services.device_directory import DeviceRef

logger = structlog.get_logger()

CANONICAL_METRICS = ("supply_temp", "return_temp", "power_kw", "flow_rate", "cop")

# Epoch values above this are milliseconds (10^11 s is the year 5138)
EPOCH_MILLIS_CUTOFF = 1e11

DEFAULT_MAX_FUTURE_SKEW_SECONDS = 300.0


def _identity(value: float) -> float:
    return value


@dataclass(frozen=True)
class MetricMapping:
    """One raw field -> canonical metric entry."""

    raw_key: str
    metric: str
    convert: Callable[[float], float] = _identity

    @classmethod
    def scaled(cls, raw_key: str, metric: str, factor: float) -> "MetricMapping":
        return cls(raw_key, metric, lambda value: value * factor)

    @classmethod
    def divided(cls, raw_key: str, metric: str, divisor: float) -> "MetricMapping":
        return cls(raw_key, metric, lambda value: value / divisor)


# Fields under payload["sensor"]. Order matters when two raw fields map to
# the same metric: the first one present wins.
SENSOR_MAPPINGS: tuple[MetricMapping, ...] = (
    MetricMapping("supply_temperature_c", "supply_temp"),
    MetricMapping("return_temperature_c", "return_temp"),
    MetricMapping("power_kw", "power_kw"),
    MetricMapping.divided("power_w", "power_kw", 1000),
    MetricMapping("flow_lps", "flow_rate"),
    MetricMapping.divided("flow_lpm", "flow_rate", 60),
    MetricMapping("flow", "flow_rate"),
    MetricMapping("cop", "cop"),
)

# Older firmware publishes camelCase readings at the top level
LEGACY_MAPPINGS: tuple[MetricMapping, ...] = (
    MetricMapping("supplyTemp", "supply_temp"),
    MetricMapping("returnTemp", "return_temp"),
    MetricMapping("powerKw", "power_kw"),
    MetricMapping("flowRate", "flow_rate"),
    MetricMapping("cop", "cop"),
)


class MetricTable:
    """The full set of mappings in precedence order."""

    def __init__(
        self,
        sensor: Iterable[MetricMapping] = SENSOR_MAPPINGS,
        legacy: Iterable[MetricMapping] = LEGACY_MAPPINGS,
    ):
        self.sensor = tuple(sensor)
        self.legacy = tuple(legacy)

    @classmethod
    def with_extensions(cls, extensions: Mapping[str, Any]) -> "MetricTable":
        """Add device-specific sensor fields from configuration.

        Values are either a canonical name or ``{"metric": name, "scale": factor}``.
        """
        extra = []
        for raw_key, spec in extensions.items():
            if isinstance(spec, str):
                extra.append(MetricMapping(raw_key, spec))
            elif isinstance(spec, Mapping) and isinstance(spec.get("metric"), str):
                scale = spec.get("scale", 1)
                if not _is_number(scale):
                    raise ValueError(f"Invalid scale for metric extension {raw_key!r}")
                extra.append(MetricMapping.scaled(raw_key, spec["metric"], float(scale)))
            else:
                raise ValueError(f"Invalid metric extension for {raw_key!r}")
        return cls(sensor=SENSOR_MAPPINGS + tuple(extra))

    @property
    def canonical_names(self) -> frozenset[str]:
        return frozenset(m.metric for m in self.sensor) | frozenset(CANONICAL_METRICS)


class RejectionReason(str, Enum):
    BAD_TOPIC = "bad_topic"
    INVALID_JSON = "invalid_json"
    NOT_AN_OBJECT = "not_an_object"
    UNKNOWN_DEVICE = "unknown_device"


@dataclass(frozen=True)
class Rejected:
    """Structured rejection; counted by the caller, never raised."""

    reason: RejectionReason
    topic: str
    detail: str | None = None


@dataclass(frozen=True)
class DeviceSnapshot:
    """Canonical reading of one device at one instant."""

    device: DeviceRef
    ts: datetime
    metrics: Mapping[str, float]
    raw: Any
    received_at: datetime
    ts_from_payload: bool = True
    invalid_fields: tuple[str, ...] = field(default=())

    @property
    def device_id(self) -> uuid.UUID:
        return self.device.id


@dataclass(frozen=True)
class TopicAddress:
    site: str
    device: str


class DeviceResolver(Protocol):
    async def resolve(self, external_id: str) -> DeviceRef | None: ...


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # JSON integers have no size limit
        return False


def parse_topic(topic: str, prefix: str) -> TopicAddress | None:
    """Parse ``{prefix}/{site}/{device}/telemetry``."""
    parts = topic.split("/")
    if len(parts) != 4 or parts[0] != prefix or parts[3] != "telemetry":
        return None
    site, device = parts[1], parts[2]
    if not site or not device:
        return None
    return TopicAddress(site=site, device=device)


def parse_timestamp(value: Any) -> datetime | None:
    """Epoch seconds, epoch milliseconds or ISO-8601; ``None`` if unusable."""
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = dtparser.isoparse(text)
            except (ValueError, OverflowError):
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        value = number

    if not _is_number(value):
        return None
    seconds = value / 1000 if abs(value) > EPOCH_MILLIS_CUTOFF else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class MessageNormalizer:
    """Parses topic and payload, resolves the device and maps metrics."""

    TIMESTAMP_FIELDS = ("ts", "timestamp")

    def __init__(
        self,
        devices: DeviceResolver,
        topic_prefix: str = "greenbro",
        metric_table: MetricTable | None = None,
        max_future_skew_seconds: float = DEFAULT_MAX_FUTURE_SKEW_SECONDS,
    ):
        self.devices = devices
        self.topic_prefix = topic_prefix
        self.metric_table = metric_table or MetricTable()
        self.max_future_skew = timedelta(seconds=max_future_skew_seconds)

    async def normalize(
        self,
        topic: str,
        payload: bytes,
        received_at: datetime | None = None,
    ) -> DeviceSnapshot | Rejected:
        received_at = received_at or utcnow()

        address = parse_topic(topic, self.topic_prefix)
        if address is None:
            logger.debug("Ignoring message on unexpected topic", topic=topic)
            return Rejected(RejectionReason.BAD_TOPIC, topic)

        try:
            data = json.loads(payload)
        except (ValueError, RecursionError) as e:
            return Rejected(RejectionReason.INVALID_JSON, topic, detail=str(e)[:200])

        if not isinstance(data, dict):
            return Rejected(RejectionReason.NOT_AN_OBJECT, topic, detail=type(data).__name__)

        device = await self.devices.resolve(address.device)
        if device is None:
            return Rejected(RejectionReason.UNKNOWN_DEVICE, topic, detail=address.device)

        ts = self._resolve_timestamp(data)
        if ts is not None and ts - received_at > self.max_future_skew:
            logger.warning(
                "Payload timestamp too far ahead, using ingest time",
                device_id=str(device.id),
                ts=ts.isoformat(),
                received_at=received_at.isoformat(),
            )
            ts = None
        metrics, invalid = self.map_metrics(data)
        return DeviceSnapshot(
            device=device,
            ts=ts or received_at,
            metrics=metrics,
            raw=data,
            received_at=received_at,
            ts_from_payload=ts is not None,
            invalid_fields=tuple(invalid),
        )

    def _resolve_timestamp(self, data: dict[str, Any]) -> datetime | None:
        for name in self.TIMESTAMP_FIELDS:
            if name in data:
                ts = parse_timestamp(data[name])
                if ts is not None:
                    return ts
        return None

    def map_metrics(self, data: dict[str, Any]) -> tuple[dict[str, float], list[str]]:
        """Return canonical metrics and the raw fields that were present but unusable.

        Precedence: ``sensor`` object, then an already-canonical ``metrics``
        object, then legacy top-level fields.
        """
        metrics: dict[str, float] = {}
        invalid: list[str] = []

        sensor = data.get("sensor")
        if isinstance(sensor, dict):
            self._apply(self.metric_table.sensor, sensor, metrics, invalid, "sensor")

        canonical = data.get("metrics")
        if isinstance(canonical, dict):
            identity = [MetricMapping(name, name) for name in self.metric_table.canonical_names]
            self._apply(identity, canonical, metrics, invalid, "metrics")

        self._apply(self.metric_table.legacy, data, metrics, invalid, None)
        return metrics, invalid

    @staticmethod
    def _apply(
        mappings: Iterable[MetricMapping],
        source: dict[str, Any],
        metrics: dict[str, float],
        invalid: list[str],
        scope: str | None,
    ) -> None:
        for mapping in mappings:
            if mapping.metric in metrics or mapping.raw_key not in source:
                continue
            value = source[mapping.raw_key]
            if not _is_number(value):
                invalid.append(f"{scope}.{mapping.raw_key}" if scope else mapping.raw_key)
                continue
            converted = mapping.convert(float(value))
            if math.isfinite(converted):
                metrics[mapping.metric] = converted
