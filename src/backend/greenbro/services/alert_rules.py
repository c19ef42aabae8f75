"""Typed alert rules and the cache that loads them.

Each stored row becomes exactly one variant carrying only the fields its
type uses. Rows that cannot become a variant are skipped and counted.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core import metrics
from greenbro.models.alert import AlertSeverity, AlertType
from greenbro.models.alert_rule import AlertRuleRow
from greenbro.services.device_directory import DeviceRef
from greenbro.services.health_service import HealthState

logger = structlog.get_logger()


class MalformedRuleError(Exception):
    """Raised when a stored rule is missing a field its type requires."""


class ThresholdDirection(str, Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass(frozen=True)
class RuleScope:
    """Organisation, optionally narrowed to a site or a single device."""

    org_id: uuid.UUID
    site_id: uuid.UUID | None = None
    device_id: uuid.UUID | None = None

    def applies_to(self, device: DeviceRef) -> bool:
        if device.org_id != self.org_id:
            return False
        if self.device_id is not None:
            return self.device_id == device.id
        if self.site_id is not None:
            return self.site_id == device.site_id
        return True


@dataclass(frozen=True)
class _RuleBase:
    id: uuid.UUID
    scope: RuleScope
    metric: str
    severity: AlertSeverity
    snooze_default_sec: int | None
    name: str | None

    kind: ClassVar[AlertType]
    stored_type: ClassVar[str]

    @property
    def display_name(self) -> str:
        return self.name or f"{self.metric} {self.stored_type}"


@dataclass(frozen=True)
class ThresholdRule(_RuleBase):
    threshold: float
    direction: ThresholdDirection

    kind: ClassVar[AlertType] = AlertType.THRESHOLD

    @property
    def stored_type(self) -> str:
        return f"threshold_{self.direction.value}"

    def breached(self, value: float) -> bool:
        if self.direction is ThresholdDirection.ABOVE:
            return value > self.threshold
        return value < self.threshold


@dataclass(frozen=True)
class RateOfChangeRule(_RuleBase):
    threshold: float
    window_sec: int

    kind: ClassVar[AlertType] = AlertType.RATE_OF_CHANGE
    stored_type: ClassVar[str] = "rate_of_change"


@dataclass(frozen=True)
class OfflineRule(_RuleBase):
    grace_sec: int

    kind: ClassVar[AlertType] = AlertType.OFFLINE
    stored_type: ClassVar[str] = "offline"


AlertRule = Union[ThresholdRule, RateOfChangeRule, OfflineRule]


def parse_rule(row: AlertRuleRow, offline_grace_default: int = 600) -> AlertRule:
    """Build the typed variant for a stored row or raise ``MalformedRuleError``."""
    try:
        severity = AlertSeverity(row.severity)
    except ValueError:
        raise MalformedRuleError(f"unknown severity {row.severity!r}") from None

    common = dict(
        id=row.id,
        scope=RuleScope(org_id=row.org_id, site_id=row.site_id, device_id=row.device_id),
        metric=row.metric,
        severity=severity,
        snooze_default_sec=row.snooze_default_sec,
        name=row.name,
    )

    rule_type = row.rule_type
    if rule_type in ("threshold_above", "threshold_below"):
        if row.threshold is None:
            raise MalformedRuleError(f"{rule_type} rule has no threshold")
        if not row.metric:
            raise MalformedRuleError(f"{rule_type} rule has no metric")
        direction = ThresholdDirection.ABOVE if rule_type == "threshold_above" else ThresholdDirection.BELOW
        return ThresholdRule(threshold=row.threshold, direction=direction, **common)

    if rule_type == "rate_of_change":
        if not row.roc_window_sec or row.roc_window_sec <= 0:
            raise MalformedRuleError("rate_of_change rule needs a positive roc_window_sec")
        if row.threshold is None or row.threshold <= 0:
            raise MalformedRuleError("rate_of_change rule needs a positive threshold")
        if not row.metric:
            raise MalformedRuleError("rate_of_change rule has no metric")
        return RateOfChangeRule(threshold=row.threshold, window_sec=row.roc_window_sec, **common)

    if rule_type == "offline":
        grace = row.offline_grace_sec
        if grace is None:
            grace = offline_grace_default
        if grace <= 0:
            raise MalformedRuleError("offline rule needs a positive offline_grace_sec")
        return OfflineRule(grace_sec=grace, **common)

    raise MalformedRuleError(f"unknown rule type {rule_type!r}")


@dataclass(frozen=True)
class RuleSet:
    """Enabled, well-formed rules as of one load."""

    rules: tuple[AlertRule, ...] = ()
    skipped: int = 0

    @property
    def offline_rules(self) -> tuple[OfflineRule, ...]:
        return tuple(r for r in self.rules if isinstance(r, OfflineRule))

    def for_device(self, device: DeviceRef) -> list[AlertRule]:
        """Threshold and rate-of-change rules that target this device."""
        return [
            r for r in self.rules
            if not isinstance(r, OfflineRule) and r.scope.applies_to(device)
        ]


class RuleCache:
    """Loads enabled rules and reuses them until they are older than ``refresh_seconds``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        refresh_seconds: float = 300,
        offline_grace_default: int = 600,
        health: HealthState | None = None,
    ):
        self.session_factory = session_factory
        self.refresh_seconds = refresh_seconds
        self.offline_grace_default = offline_grace_default
        self.health = health
        self._rules = RuleSet()
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._loaded_at = None

    async def get_rules(self, force: bool = False) -> RuleSet:
        if not force and self._is_fresh():
            return self._rules
        async with self._lock:
            # Another lane may have reloaded while we waited
            if not force and self._is_fresh():
                return self._rules
            self._rules = await self._load()
            self._loaded_at = time.monotonic()
        return self._rules

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and time.monotonic() - self._loaded_at < self.refresh_seconds

    async def _load(self) -> RuleSet:
        async with self.session_factory() as db:
            result = await db.execute(select(AlertRuleRow).where(AlertRuleRow.enabled.is_(True)))
            rows = list(result.scalars().all())

        rules: list[AlertRule] = []
        skipped = 0
        for row in rows:
            try:
                rules.append(parse_rule(row, self.offline_grace_default))
            except MalformedRuleError as e:
                skipped += 1
                metrics.malformed_rules_total.inc()
                logger.warning("Skipping malformed alert rule", rule_id=str(row.id), error=str(e))

        if self.health is not None:
            self.health.record_rules_loaded(len(rules), skipped)
        logger.info("Alert rules loaded", rules_loaded=len(rules), rules_skipped=skipped)
        return RuleSet(rules=tuple(rules), skipped=skipped)
