"""Alert rule rows as operators store them."""

import uuid

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from greenbro.models.base import Base, TimestampMixin


class AlertRuleRow(Base, TimestampMixin):
    """Operator-defined rule.

    rule_type and severity are free strings here; they are validated when
    the rule is loaded so that one bad row cannot block the others.
    """

    __tablename__ = "alert_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Scope
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    site_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    device_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    metric: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False)

    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    roc_window_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    offline_grace_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)

    severity: Mapped[str] = mapped_column(String(16), default="warning", nullable=False)
    snooze_default_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AlertRuleRow(id={self.id}, rule_type={self.rule_type}, metric={self.metric})>"
