"""Offline detection by polling.

A silent device produces no messages, so nothing on the ingest path can
notice it. This service periodically compares each device's last_seen_at
against the offline rules that target it.
"""

import asyncio
import time
import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbro.core import metrics
from greenbro.core.clock import utcnow
from greenbro.models.device import Device
from greenbro.services.alert_rule_evaluation_service import (
    EvaluationOutcome,
    RuleEvaluator,
    count_outcome,
)
from greenbro.services.alert_rules import OfflineRule, RuleCache
from greenbro.services.alert_service import AlertService
from greenbro.services.device_directory import DeviceRef
from greenbro.services.health_service import HealthState, SweepStats
from greenbro.services.worker_lock_service import WorkerLockService

logger = structlog.get_logger()


class OfflineSweeperService:
    """
    Raises and clears offline alerts on a fixed interval.

    Runs as a background task independent of message processing. Each
    device is handled in its own short transaction. With a ``lock``, only
    the instance holding it sweeps; the others stay on standby and retry
    the lock every interval.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rule_cache: RuleCache,
        evaluator: RuleEvaluator,
        health: HealthState | None = None,
        interval_seconds: float = 60.0,
        failure_cooldown_seconds: float = 5.0,
        lock: WorkerLockService | None = None,
    ):
        self.session_factory = session_factory
        self.rule_cache = rule_cache
        self.evaluator = evaluator
        self.health = health
        self.interval_seconds = interval_seconds
        self.failure_cooldown_seconds = failure_cooldown_seconds
        self.lock = lock
        self._running = False
        self._in_progress = False
        self._task: asyncio.Task | None = None
        self._renew_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="offline_sweeper")
        if self.lock is not None:
            self._renew_task = asyncio.create_task(self._renew_loop(), name="offline_sweeper_lock")
        logger.info("Offline sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop and hand the lock back."""
        self._running = False
        for task in (self._task, self._renew_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._renew_task = None

        if self.lock is not None and self.lock.held:
            try:
                await self.lock.release()
            except (SQLAlchemyError, OSError) as e:
                # The lease still expires after its TTL
                logger.warning("Failed to release worker lock", lock=self.lock.name, error=str(e))
        logger.info("Offline sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                if await self._hold_lock():
                    await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Offline sweep failed", error=str(e))
                if self.health is not None:
                    self.health.record_sweep_failure(e)
                await asyncio.sleep(self.failure_cooldown_seconds)
            await asyncio.sleep(self.interval_seconds)

    async def _hold_lock(self) -> bool:
        """True when this instance may sweep. Acquiring also extends a lease we already hold."""
        if self.lock is None:
            return True
        if await self.lock.acquire():
            return True
        logger.debug("Worker lock held by another instance, standing by", lock=self.lock.name)
        if self.health is not None:
            self.health.record_standby()
        return False

    async def _renew_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.lock.renew_interval_seconds)
            if not self.lock.held:
                continue
            try:
                await self.lock.renew()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to renew worker lock", lock=self.lock.name, error=str(e))

    async def sweep(self, now: datetime | None = None) -> SweepStats | None:
        """Run one pass. Returns ``None`` if a pass is already running."""
        if self._in_progress:
            logger.debug("Offline sweep already in progress, skipping")
            return None

        self._in_progress = True
        try:
            return await self._sweep(now or utcnow())
        finally:
            self._in_progress = False

    async def _sweep(self, now: datetime) -> SweepStats:
        started = time.perf_counter()
        stats = SweepStats()

        rule_set = await self.rule_cache.get_rules()
        offline_rules = rule_set.offline_rules
        if offline_rules:
            org_ids = {rule.scope.org_id for rule in offline_rules}
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Device.id).where(Device.organisation_id.in_(org_ids))
                )
                device_ids = list(result.scalars().all())

            for device_id in device_ids:
                await self._sweep_device(device_id, offline_rules, stats, now)

        async with self.session_factory() as db:
            active_counts = await AlertService(db).active_counts()

        duration = time.perf_counter() - started
        metrics.sweep_duration.observe(duration)
        metrics.set_active_alerts(active_counts)
        if self.health is not None:
            self.health.record_sweep(stats, active_counts, duration * 1000, now)

        logger.info(
            "Offline sweep complete",
            rules=len(offline_rules),
            evaluated=stats.evaluated,
            triggered=stats.triggered,
            cleared=stats.cleared,
            skipped=stats.skipped,
            duration_ms=round(duration * 1000, 2),
        )
        return stats

    async def _sweep_device(
        self,
        device_id: uuid.UUID,
        offline_rules: tuple[OfflineRule, ...],
        stats: SweepStats,
        now: datetime,
    ) -> None:
        async with self.session_factory() as db:
            # Fresh read: a snapshot may have landed since the device list was fetched
            device = await db.get(Device, device_id)
            if device is None:
                return
            ref = DeviceRef.from_model(device)
            # A device that never reported is measured from provisioning
            reference = device.last_seen_at or device.created_at

            alerts = AlertService(db)
            for rule in offline_rules:
                if not rule.scope.applies_to(ref):
                    continue
                try:
                    outcome = await self.evaluator.evaluate_offline(alerts, rule, ref, reference, now)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    outcome = EvaluationOutcome.SKIPPED
                    if self.health is not None:
                        self.health.record_alerts_error(e)
                    logger.error(
                        "Offline rule evaluation failed",
                        rule_id=str(rule.id),
                        device_id=str(device_id),
                        error=str(e),
                    )
                count_outcome(stats, outcome)
