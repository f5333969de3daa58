"""
Cost Sync Job Model

Durable checkpoint for a chunked historical cost synchronization.
Each chunk of the requested range is processed by its own background job;
this row carries the counters and per-chunk state between them.
"""
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from sqlalchemy import String, Text, Integer, Date, DateTime, ForeignKey, Float, JSON, Uuid, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from costsync.shared.db.base import Base


class SyncStatus(str, Enum):
    """Lifecycle shared by sync jobs and their chunks."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncKind(str, Enum):
    HISTORICAL = "costs"
    INCREMENTAL = "costs_incremental"


TERMINAL_STATUSES = (SyncStatus.COMPLETED.value, SyncStatus.FAILED.value)
ACTIVE_STATUSES = (SyncStatus.PENDING.value, SyncStatus.RUNNING.value)


class CostSyncJob(Base):
    __tablename__ = "cost_sync_jobs"
    __table_args__ = (
        Index("ix_cost_sync_jobs_tenant_status", "tenant_id", "sync_type", "status"),
        CheckConstraint("completed_chunks + failed_chunks <= total_chunks", name="ck_cost_sync_jobs_chunk_counts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(32), default=SyncKind.HISTORICAL.value)
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.PENDING.value)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_chunks: Mapped[int] = mapped_column(Integer, default=0)
    completed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    failed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)

    processing_rate: Mapped[float | None] = mapped_column(Float, nullable=True)  # records / second
    estimated_completion_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_operation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_resource_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Ordered list of {index, label, start, end, status, records, started_at, completed_at, error}.
    # Always reassigned as a new list so the ORM detects the change.
    chunk_details: Mapped[list] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<CostSyncJob {self.id} status={self.status} {self.completed_chunks}+{self.failed_chunks}/{self.total_chunks}>"
