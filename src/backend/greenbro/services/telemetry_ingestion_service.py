"""Processes one telemetry message: normalize, persist, evaluate."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog

from greenbro.core import metrics
from greenbro.services.alert_rule_evaluation_service import RuleEvaluator
from greenbro.services.health_service import HealthState, SweepStats
from greenbro.services.message_normalizer import (
    DeviceSnapshot,
    MessageNormalizer,
    Rejected,
    RejectionReason,
)
from greenbro.services.snapshot_store import AppendResult, SnapshotStore, SnapshotStoreError

logger = structlog.get_logger()

# Rejections that indicate a broken publisher rather than expected noise
_INGEST_ERROR_REASONS = {RejectionReason.INVALID_JSON, RejectionReason.NOT_AN_OBJECT}


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    snapshot: DeviceSnapshot | None = None
    rejection: Rejected | None = None
    append: AppendResult | None = None
    evaluation: SweepStats | None = None


class TelemetryIngestionService:
    """Runs inside a device lane; never raises for bad input or storage failure."""

    def __init__(
        self,
        normalizer: MessageNormalizer,
        store: SnapshotStore,
        evaluator: RuleEvaluator | None = None,
        health: HealthState | None = None,
    ):
        self.normalizer = normalizer
        self.store = store
        self.evaluator = evaluator
        self.health = health

    async def process(
        self,
        topic: str,
        payload: bytes,
        received_at: datetime | None = None,
    ) -> IngestResult:
        outcome = await self.normalizer.normalize(topic, payload, received_at)
        if isinstance(outcome, Rejected):
            self._record_rejection(outcome)
            return IngestResult(status=IngestStatus.REJECTED, rejection=outcome)

        snapshot = outcome
        try:
            append = await self.store.append(snapshot)
        except SnapshotStoreError as e:
            metrics.messages_failed_total.inc()
            if self.health is not None:
                self.health.mark_ingest_error(e)
            logger.error(
                "Dropping snapshot after store failures",
                device_id=str(snapshot.device_id),
                topic=topic,
                error=str(e),
            )
            return IngestResult(status=IngestStatus.FAILED, snapshot=snapshot)

        metrics.messages_persisted_total.inc()
        if self.health is not None:
            self.health.mark_ingest_success()
        if snapshot.invalid_fields:
            logger.info(
                "Ignored non-numeric sensor fields",
                device_id=str(snapshot.device_id),
                fields=list(snapshot.invalid_fields),
            )

        evaluation = None
        # Out-of-order snapshots are stored as points but never move alert state
        if self.evaluator is not None and append.latest_applied:
            try:
                evaluation = await self.evaluator.evaluate_snapshot(snapshot)
            except Exception as e:
                if self.health is not None:
                    self.health.record_alerts_error(e)
                logger.error(
                    "Alert evaluation failed",
                    device_id=str(snapshot.device_id),
                    error=str(e),
                )

        return IngestResult(
            status=IngestStatus.ACCEPTED,
            snapshot=snapshot,
            append=append,
            evaluation=evaluation,
        )

    def _record_rejection(self, rejection: Rejected) -> None:
        reason = rejection.reason
        metrics.record_rejection(reason.value)
        if self.health is not None:
            self.health.record_rejection(reason.value)

        if reason in _INGEST_ERROR_REASONS:
            if self.health is not None:
                self.health.record_error(f"{reason.value}: {rejection.detail or ''}")
            logger.warning(
                "Rejected telemetry payload",
                topic=rejection.topic,
                reason=reason.value,
                detail=rejection.detail,
            )
        elif reason is RejectionReason.UNKNOWN_DEVICE:
            logger.info("Telemetry from unknown device", topic=rejection.topic, device=rejection.detail)
