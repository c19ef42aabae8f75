"""Alert instance persistence: raise, bump, clear and operator actions."""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from greenbro.core.clock import utcnow
from greenbro.models.alert import AlertInstance, AlertSeverity, AlertStatus, AlertType
from greenbro.models.alert_rule import AlertRuleRow
from greenbro.services.alert_state_machine import (
    AlertState,
    apply_clear,
    apply_firing,
    ensure_transition,
)
from greenbro.services.device_directory import DeviceRef

logger = structlog.get_logger()

DEFAULT_SNOOZE_SECONDS = 3600


class AlertNotFoundError(Exception):
    """Raised when an operator action targets an unknown alert."""


class AlertService:
    """Service for alert instance operations on a caller-owned session.

    The caller commits; methods only flush.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_active(self, rule_id: uuid.UUID, device_id: uuid.UUID) -> AlertInstance | None:
        result = await self.db.execute(
            select(AlertInstance).where(
                AlertInstance.rule_id == rule_id,
                AlertInstance.device_id == device_id,
                AlertInstance.status == AlertStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def fire(
        self,
        rule_id: uuid.UUID,
        device: DeviceRef,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        now: datetime | None = None,
    ) -> tuple[AlertInstance, bool]:
        """Raise a new instance or bump the active one.

        Returns the instance and whether it was created.
        """
        now = now or utcnow()
        existing = await self.find_active(rule_id, device.id)
        if existing is not None:
            apply_firing(existing, severity, message, now)
            await self.db.flush()
            return existing, False

        ensure_transition(AlertState.NOT_FIRING, AlertState.ACTIVE)
        alert = AlertInstance(
            id=uuid.uuid4(),
            org_id=device.org_id,
            site_id=device.site_id,
            device_id=device.id,
            rule_id=rule_id,
            severity=severity,
            status=AlertStatus.ACTIVE,
            alert_type=alert_type,
            message=message,
            first_seen_at=now,
            last_seen_at=now,
        )
        self.db.add(alert)
        await self.db.flush()

        logger.info(
            "Alert raised",
            alert_id=str(alert.id),
            rule_id=str(rule_id),
            device_id=str(device.id),
            type=alert_type.value,
            severity=AlertSeverity(severity).value,
        )
        return alert, True

    async def clear(
        self,
        rule_id: uuid.UUID,
        device_id: uuid.UUID,
        now: datetime | None = None,
    ) -> AlertInstance | None:
        """Clear the active instance for (rule, device), if any."""
        existing = await self.find_active(rule_id, device_id)
        if existing is None:
            return None

        apply_clear(existing, now or utcnow())
        await self.db.flush()
        logger.info(
            "Alert cleared",
            alert_id=str(existing.id),
            rule_id=str(rule_id),
            device_id=str(device_id),
        )
        return existing

    async def get_alert(self, alert_id: uuid.UUID) -> AlertInstance:
        alert = await self.db.get(AlertInstance, alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    async def acknowledge(
        self,
        alert_id: uuid.UUID,
        user_id: str,
        now: datetime | None = None,
    ) -> AlertInstance:
        """Record operator acknowledgement. Does not clear the alert."""
        alert = await self.get_alert(alert_id)
        alert.acknowledged_by = user_id
        alert.acknowledged_at = now or utcnow()
        await self.db.flush()
        return alert

    async def mute(
        self,
        alert_id: uuid.UUID,
        seconds: int | None = None,
        now: datetime | None = None,
    ) -> AlertInstance:
        """Mute until now + seconds, defaulting to the rule's snooze duration."""
        alert = await self.get_alert(alert_id)
        if seconds is None:
            seconds = await self._default_snooze(alert.rule_id)
        alert.muted_until = (now or utcnow()) + timedelta(seconds=seconds)
        await self.db.flush()
        return alert

    async def unmute(self, alert_id: uuid.UUID) -> AlertInstance:
        alert = await self.get_alert(alert_id)
        alert.muted_until = None
        await self.db.flush()
        return alert

    async def active_counts(self) -> dict[str, int]:
        """Active instance counts by severity, every severity present."""
        result = await self.db.execute(
            select(AlertInstance.severity, func.count())
            .where(AlertInstance.status == AlertStatus.ACTIVE)
            .group_by(AlertInstance.severity)
        )
        counts = {severity.value: 0 for severity in AlertSeverity}
        for severity, count in result.all():
            counts[AlertSeverity(severity).value] = count
        return counts

    async def _default_snooze(self, rule_id: uuid.UUID | None) -> int:
        if rule_id is not None:
            rule = await self.db.get(AlertRuleRow, rule_id)
            if rule is not None and rule.snooze_default_sec:
                return rule.snooze_default_sec
        return DEFAULT_SNOOZE_SECONDS
