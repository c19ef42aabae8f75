"""Rule evaluation for incoming snapshots and for offline checks.

Threshold and rate-of-change rules run per message, inside the device's
lane. Offline rules run from the sweeper. Both paths go through the same
fire/clear logic in ``AlertService``, so an instance is deduplicated per
(rule, device) regardless of which path fired it.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core import metrics
from greenbro.core.clock import ensure_utc, utcnow
from greenbro.models.telemetry import TelemetryPoint
from greenbro.services.alert_rules import (
    AlertRule,
    OfflineRule,
    RateOfChangeRule,
    RuleCache,
    ThresholdRule,
)
from greenbro.services.alert_service import AlertService
from greenbro.services.device_directory import DeviceRef
from greenbro.services.health_service import HealthState, SweepStats
from greenbro.services.message_normalizer import DeviceSnapshot

logger = structlog.get_logger()


class EvaluationOutcome(str, Enum):
    TRIGGERED = "triggered"
    CLEARED = "cleared"
    NOT_FIRING = "not_firing"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class WindowPoint:
    ts: datetime
    value: float


def count_outcome(stats: SweepStats, outcome: EvaluationOutcome) -> None:
    stats.evaluated += 1
    if outcome is EvaluationOutcome.TRIGGERED:
        stats.triggered += 1
    elif outcome is EvaluationOutcome.CLEARED:
        stats.cleared += 1
    elif outcome is EvaluationOutcome.SKIPPED:
        stats.skipped += 1
    metrics.record_rule_outcome(outcome.value)


class RuleEvaluator:
    """Evaluates rules and drives alert instances through their lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rule_cache: RuleCache,
        health: HealthState | None = None,
    ):
        self.session_factory = session_factory
        self.rule_cache = rule_cache
        self.health = health

    async def evaluate_snapshot(
        self,
        snapshot: DeviceSnapshot,
        now: datetime | None = None,
    ) -> SweepStats:
        """Evaluate every threshold / rate-of-change rule targeting the snapshot's device.

        A failing rule is logged and counted as skipped; the remaining rules
        still run.
        """
        now = now or utcnow()
        stats = SweepStats()
        rule_set = await self.rule_cache.get_rules()
        rules = rule_set.for_device(snapshot.device)
        if not rules:
            return stats

        async with self.session_factory() as db:
            alerts = AlertService(db)
            for rule in rules:
                try:
                    outcome = await self._evaluate_message_rule(db, alerts, rule, snapshot, now)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    outcome = EvaluationOutcome.SKIPPED
                    if self.health is not None:
                        self.health.record_alerts_error(e)
                    logger.error(
                        "Rule evaluation failed",
                        rule_id=str(rule.id),
                        device_id=str(snapshot.device_id),
                        error=str(e),
                    )
                count_outcome(stats, outcome)

        if self.health is not None:
            self.health.record_message_evaluation(stats)
        return stats

    async def _evaluate_message_rule(
        self,
        db: AsyncSession,
        alerts: AlertService,
        rule: AlertRule,
        snapshot: DeviceSnapshot,
        now: datetime,
    ) -> EvaluationOutcome:
        if isinstance(rule, ThresholdRule):
            return await self.evaluate_threshold(alerts, rule, snapshot, now)
        if isinstance(rule, RateOfChangeRule):
            return await self.evaluate_rate_of_change(db, alerts, rule, snapshot, now)
        return EvaluationOutcome.SKIPPED

    async def evaluate_threshold(
        self,
        alerts: AlertService,
        rule: ThresholdRule,
        snapshot: DeviceSnapshot,
        now: datetime,
    ) -> EvaluationOutcome:
        value = snapshot.metrics.get(rule.metric)
        if value is None:
            # Unknown is not in-bounds: leave any active alert as it is
            return EvaluationOutcome.SKIPPED

        if not rule.breached(value):
            return await self._clear(alerts, rule, snapshot.device, now)

        message = (
            f"{rule.display_name}: value {value:.2f} {rule.direction.value} "
            f"threshold {rule.threshold:g}"
        )
        await alerts.fire(rule.id, snapshot.device, rule.kind, rule.severity, message, now)
        return EvaluationOutcome.TRIGGERED

    async def evaluate_rate_of_change(
        self,
        db: AsyncSession,
        alerts: AlertService,
        rule: RateOfChangeRule,
        snapshot: DeviceSnapshot,
        now: datetime,
    ) -> EvaluationOutcome:
        if rule.metric not in snapshot.metrics:
            return EvaluationOutcome.SKIPPED

        end = snapshot.ts
        start = end - timedelta(seconds=rule.window_sec)
        points = await self.window_points(db, snapshot.device_id, rule.metric, start, end)

        # A rate needs two distinct instants; anything less is not firing
        if len(points) < 2:
            return await self._clear(alerts, rule, snapshot.device, now)
        first, last = points[0], points[-1]
        elapsed = (last.ts - first.ts).total_seconds()
        if elapsed <= 0:
            return await self._clear(alerts, rule, snapshot.device, now)

        delta = last.value - first.value
        if abs(delta) < rule.threshold:
            return await self._clear(alerts, rule, snapshot.device, now)

        name = rule.name or "Rapid change"
        message = f"{name}: {delta:.2f} over {elapsed / 60:.1f}m (threshold {rule.threshold:g})"
        await alerts.fire(rule.id, snapshot.device, rule.kind, rule.severity, message, now)
        return EvaluationOutcome.TRIGGERED

    async def evaluate_offline(
        self,
        alerts: AlertService,
        rule: OfflineRule,
        device: DeviceRef,
        last_seen_at: datetime | None,
        now: datetime,
    ) -> EvaluationOutcome:
        """Fire when the device has been silent for at least the rule's grace period."""
        reference = ensure_utc(last_seen_at)
        if reference is None:
            return EvaluationOutcome.SKIPPED

        silent_for = (now - reference).total_seconds()
        if silent_for < rule.grace_sec:
            return await self._clear(alerts, rule, device, now)

        name = rule.name or "Device offline"
        message = (
            f"{name}: offline for {silent_for / 60:.1f} minutes "
            f"(grace {round(rule.grace_sec / 60)}m)"
        )
        await alerts.fire(rule.id, device, rule.kind, rule.severity, message, now)
        return EvaluationOutcome.TRIGGERED

    @staticmethod
    async def window_points(
        db: AsyncSession,
        device_id: uuid.UUID,
        metric: str,
        start: datetime,
        end: datetime,
    ) -> list[WindowPoint]:
        result = await db.execute(
            select(TelemetryPoint.ts, TelemetryPoint.value)
            .where(
                TelemetryPoint.device_id == device_id,
                TelemetryPoint.metric == metric,
                TelemetryPoint.ts >= start,
                TelemetryPoint.ts <= end,
            )
            .order_by(TelemetryPoint.ts.asc())
        )
        return [WindowPoint(ts=ensure_utc(ts), value=value) for ts, value in result.all()]

    @staticmethod
    async def _clear(
        alerts: AlertService,
        rule: AlertRule,
        device: DeviceRef,
        now: datetime,
    ) -> EvaluationOutcome:
        cleared = await alerts.clear(rule.id, device.id, now)
        return EvaluationOutcome.CLEARED if cleared else EvaluationOutcome.NOT_FIRING
