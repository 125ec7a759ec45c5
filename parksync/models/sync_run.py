import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parksync.db import Base


class SyncRunStatus(enum.Enum):
    running = "running"
    success = "success"
    error = "error"
    partial = "partial"


class SyncTrigger(enum.Enum):
    cron = "cron"
    manual = "manual"


class SyncRun(Base):
    """Audit record of one logical sync run, possibly spanning invocations."""

    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus), default=SyncRunStatus.running
    )
    trigger: Mapped[SyncTrigger] = mapped_column(Enum(SyncTrigger), default=SyncTrigger.manual)
    full_resync: Mapped[bool] = mapped_column(Boolean, default=False)
    invocations: Mapped[int] = mapped_column(Integer, default=1)
    stats: Mapped[dict | None] = mapped_column(JSON)
    details: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    integration = relationship("Integration", back_populates="runs")


class SyncCursor(Base):
    """Resume point of an unfinished run. At most one per integration."""

    __tablename__ = "sync_cursors"

    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), primary_key=True
    )
    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("sync_runs.id"), nullable=False)
    offset_processed: Mapped[int] = mapped_column(Integer, default=0)
    total_expected: Mapped[int] = mapped_column(Integer, default=0)
    page_size: Mapped[int] = mapped_column(Integer, nullable=False)
    has_more: Mapped[bool] = mapped_column(Boolean, default=True)
    filter_expr: Mapped[str] = mapped_column(Text, nullable=False)
    full_resync: Mapped[bool] = mapped_column(Boolean, default=False)
    purged: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    run = relationship("SyncRun")


class SyncLock(Base):
    __tablename__ = "sync_locks"

    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), primary_key=True
    )
    owner: Mapped[str] = mapped_column(String(120), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
