"""
Sync Progress Tracker

Owns the durable state of a chunked sync job: counters, per-chunk state,
throughput and ETA. All updates are committed immediately so a dashboard
polling the job row sees progress chunk by chunk, and a restarted worker
resumes from the first chunk that has not reached a terminal state.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.sync_job import CostSyncJob, SyncKind, SyncStatus, TERMINAL_STATUSES, ACTIVE_STATUSES
from costsync.schemas.costs import ChunkRange
from costsync.shared.core.ops_metrics import SYNC_CHUNKS_PROCESSED

logger = structlog.get_logger()

FETCHING_OPERATION = "Fetching cost data"
MAX_ERROR_LENGTH = 2000


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _chunk_state(chunk: ChunkRange) -> Dict[str, Any]:
    return {
        "index": chunk.index,
        "label": chunk.label,
        "start": chunk.start.isoformat(),
        "end": chunk.end.isoformat(),
        "status": SyncStatus.PENDING.value,
        "records": 0,
        "started_at": None,
        "completed_at": None,
        "error": None,
    }


def chunk_range(job: CostSyncJob, index: int) -> ChunkRange:
    state = job.chunk_details[index]
    return ChunkRange(
        index=state["index"],
        start=date.fromisoformat(state["start"]),
        end=date.fromisoformat(state["end"]),
    )


def next_chunk_index(job: CostSyncJob) -> Optional[int]:
    """First chunk not yet completed or failed. A chunk left `running` by a crash is returned again."""
    for state in job.chunk_details or []:
        if state["status"] not in TERMINAL_STATUSES:
            return state["index"]
    return None


class SyncProgressTracker:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_job(
        self,
        tenant_id: UUID,
        start: date,
        end: date,
        chunks: Sequence[ChunkRange],
        sync_type: str = SyncKind.HISTORICAL.value,
    ) -> CostSyncJob:
        """Persist a new job with every chunk pending, then move it to running."""
        job = CostSyncJob(
            tenant_id=tenant_id,
            sync_type=sync_type,
            status=SyncStatus.PENDING.value,
            start_date=start,
            end_date=end,
            total_chunks=len(chunks),
            completed_chunks=0,
            failed_chunks=0,
            records_synced=0,
            chunk_details=[_chunk_state(c) for c in chunks],
        )
        self.db.add(job)
        await self.db.flush()

        job.status = SyncStatus.RUNNING.value
        job.started_at = datetime.now(timezone.utc)
        job.current_operation = "Queued"
        await self.db.commit()

        logger.info(
            "sync_job_created",
            sync_job_id=str(job.id),
            tenant_id=str(tenant_id),
            sync_type=sync_type,
            total_chunks=job.total_chunks,
        )
        return job

    async def get_job(self, job_id: UUID, lock: bool = False) -> Optional[CostSyncJob]:
        stmt = select(CostSyncJob).where(CostSyncJob.id == job_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_job(self, tenant_id: UUID, sync_type: Optional[str] = None) -> Optional[CostSyncJob]:
        stmt = (
            select(CostSyncJob)
            .where(CostSyncJob.tenant_id == tenant_id, CostSyncJob.status.in_(ACTIVE_STATUSES))
            .order_by(CostSyncJob.created_at.desc())
            .limit(1)
        )
        if sync_type:
            stmt = stmt.where(CostSyncJob.sync_type == sync_type)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    def _update_chunk(self, job: CostSyncJob, index: int, **changes: Any) -> Dict[str, Any]:
        details: List[Dict[str, Any]] = [dict(state) for state in job.chunk_details]
        details[index].update(changes)
        job.chunk_details = details
        return details[index]

    async def mark_chunk_running(self, job: CostSyncJob, index: int) -> None:
        state = job.chunk_details[index]
        self._update_chunk(
            job,
            index,
            status=SyncStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc).isoformat(),
            error=None,
        )
        job.current_operation = FETCHING_OPERATION
        job.current_resource_name = state["label"]
        await self.db.commit()

    async def record_chunk_success(self, job: CostSyncJob, index: int, records: int) -> None:
        if job.chunk_details[index]["status"] in TERMINAL_STATUSES:
            logger.info("sync_chunk_already_terminal", sync_job_id=str(job.id), chunk_index=index)
            return

        now = datetime.now(timezone.utc)
        self._update_chunk(
            job,
            index,
            status=SyncStatus.COMPLETED.value,
            records=records,
            completed_at=now.isoformat(),
        )
        job.completed_chunks += 1
        job.records_synced += records
        self._update_throughput(job, now)
        await self.db.commit()

        SYNC_CHUNKS_PROCESSED.labels(status="completed").inc()
        logger.info(
            "sync_chunk_completed",
            sync_job_id=str(job.id),
            chunk_index=index,
            records=records,
            records_synced=job.records_synced,
        )

    async def record_chunk_failure(self, job: CostSyncJob, index: int, error: str) -> None:
        if job.chunk_details[index]["status"] in TERMINAL_STATUSES:
            logger.info("sync_chunk_already_terminal", sync_job_id=str(job.id), chunk_index=index)
            return

        now = datetime.now(timezone.utc)
        self._update_chunk(
            job,
            index,
            status=SyncStatus.FAILED.value,
            error=error[:MAX_ERROR_LENGTH],
            completed_at=now.isoformat(),
        )
        job.failed_chunks += 1
        self._update_throughput(job, now)
        await self.db.commit()

        SYNC_CHUNKS_PROCESSED.labels(status="failed").inc()
        logger.warning(
            "sync_chunk_failed",
            sync_job_id=str(job.id),
            chunk_index=index,
            error=error[:500],
        )

    def _update_throughput(self, job: CostSyncJob, now: datetime) -> None:
        started_at = as_utc(job.started_at) or now
        elapsed = (now - started_at).total_seconds()
        if elapsed > 0:
            job.processing_rate = round(job.records_synced / elapsed, 2)

        terminal = job.completed_chunks + job.failed_chunks
        remaining = job.total_chunks - terminal
        if remaining > 0 and terminal > 0:
            job.estimated_completion_at = now + timedelta(seconds=remaining * (elapsed / terminal))
        else:
            job.estimated_completion_at = None

    async def fail_job(self, job: CostSyncJob, error: str) -> None:
        """Close the job as failed regardless of chunk state."""
        job.status = SyncStatus.FAILED.value
        job.error_message = error[:MAX_ERROR_LENGTH]
        job.completed_at = datetime.now(timezone.utc)
        job.current_operation = None
        job.current_resource_name = None
        job.estimated_completion_at = None
        await self.db.commit()

        logger.error("sync_job_failed", sync_job_id=str(job.id), error=error[:500])

    async def finalize_if_done(self, job: CostSyncJob) -> bool:
        """
        Close the job once every chunk is terminal.
        Completed if at least one chunk succeeded, failed if all of them failed.
        """
        if job.is_terminal:
            return True
        if next_chunk_index(job) is not None:
            return False

        job.status = (
            SyncStatus.COMPLETED.value
            if job.failed_chunks < job.total_chunks
            else SyncStatus.FAILED.value
        )
        if job.status == SyncStatus.FAILED.value:
            job.error_message = "All chunks failed"
        job.completed_at = datetime.now(timezone.utc)
        job.current_operation = None
        job.current_resource_name = None
        job.estimated_completion_at = None
        await self.db.commit()

        logger.info(
            "sync_job_finished",
            sync_job_id=str(job.id),
            status=job.status,
            completed_chunks=job.completed_chunks,
            failed_chunks=job.failed_chunks,
            records_synced=job.records_synced,
        )
        return True
