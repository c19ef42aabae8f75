"""Lease row for background workers that must run on a single instance."""

from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from greenbro.models.base import Base


class WorkerLock(Base):
    """One row per worker name. The owner holds it until ``expires_at``."""

    __tablename__ = "worker_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<WorkerLock(name={self.name}, owner_id={self.owner_id}, expires_at={self.expires_at})>"
