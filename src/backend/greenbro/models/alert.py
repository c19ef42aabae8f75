"""Alert instance model: one firing episode of a rule on a device."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from greenbro.core.clock import ensure_utc
from greenbro.models.base import Base, TimestampMixin


class AlertSeverity(str, Enum):
    """Alert severity levels, lowest first."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.CRITICAL: 2,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    CLEARED = "cleared"


class AlertType(str, Enum):
    """Kind of rule that raised the alert."""

    THRESHOLD = "threshold"
    RATE_OF_CHANGE = "rate_of_change"
    OFFLINE = "offline"


class AlertInstance(Base, TimestampMixin):
    """Alert instance.

    At most one ACTIVE row may exist per (rule_id, device_id); the partial
    unique index backs up the evaluator's own check.
    """

    __tablename__ = "alerts"
    __table_args__ = (
        Index(
            "uq_alerts_active_rule_device",
            "rule_id",
            "device_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    org_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    site_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alert_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    severity: Mapped[AlertSeverity] = mapped_column(
        SQLEnum(AlertSeverity, values_callable=lambda x: [e.value for e in x]),
        default=AlertSeverity.WARNING,
        nullable=False,
        index=True,
    )
    status: Mapped[AlertStatus] = mapped_column(
        SQLEnum(AlertStatus, values_callable=lambda x: [e.value for e in x]),
        default=AlertStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    alert_type: Mapped[AlertType] = mapped_column(
        "type",
        SQLEnum(AlertType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Operator actions
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    muted_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def is_muted(self, now: datetime) -> bool:
        muted_until = ensure_utc(self.muted_until)
        return muted_until is not None and muted_until > now

    def __repr__(self) -> str:
        return f"<AlertInstance(id={self.id}, rule_id={self.rule_id}, status={self.status}, severity={self.severity})>"
