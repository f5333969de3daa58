"""
Job Processor Service

Processes background jobs from the database queue. Historical cost syncs run
here one chunk per job; each chunk enqueues its successor.

Key Features:
- Survives app restarts (jobs in database)
- Automatic retries with exponential backoff, dead letter after max attempts
- Jobs stuck in RUNNING past the lock timeout are handed back to the queue

Usage:
    processor = JobProcessor(db)
    await processor.process_pending_jobs()
"""

import sqlalchemy as sa
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
from uuid import UUID, uuid4
import structlog
import asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.background_job import BackgroundJob, JobStatus
from costsync.modules.governance.domain.jobs.handlers import HANDLER_REGISTRY, get_handler_factory
from costsync.shared.core.ops_metrics import BACKGROUND_JOBS_ENQUEUED, BACKGROUND_JOBS_DEAD_LETTERED
from costsync.shared.core.tracing import get_tracer

logger = structlog.get_logger()

MAX_JOBS_PER_BATCH = 10
JOB_LOCK_TIMEOUT_MINUTES = 30
BACKOFF_BASE_SECONDS = 60


class JobProcessor:
    """
    Processes background jobs from the database queue.

    Designed to be called by:
    1. Celery beat (every few seconds)
    2. The internal API endpoint for on-demand processing
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def process_pending_jobs(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Process due jobs up to the limit with OTel tracing.
        """
        limit = limit or MAX_JOBS_PER_BATCH
        tracer = get_tracer(__name__)

        with tracer.start_as_current_span("process_pending_jobs") as span:
            span.set_attribute("batch_limit", limit)
            results = {
                "processed": 0,
                "succeeded": 0,
                "failed": 0,
                "errors": []
            }

            try:
                await self._requeue_stale_jobs()
                pending_jobs = await self._fetch_pending_jobs(limit)

                logger.info("job_processor_batch_start", pending_count=len(pending_jobs))

                for job in pending_jobs:
                    succeeded = await self._process_single_job(job)
                    if succeeded is None:
                        continue
                    if succeeded:
                        results["succeeded"] += 1
                    else:
                        results["failed"] += 1
                        results["errors"].append({"job_id": str(job.id), "error": job.error_message})
                    results["processed"] += 1

                logger.info(
                    "job_processor_batch_complete",
                    processed=results["processed"],
                    succeeded=results["succeeded"],
                    failed=results["failed"],
                )

            except sa.exc.SQLAlchemyError as e:
                logger.error("job_processor_batch_db_error", error=str(e))
                results["errors"].append({"batch_error": str(e)})

            return results

    async def _requeue_stale_jobs(self) -> int:
        """Return jobs whose worker died mid-run to the queue."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=JOB_LOCK_TIMEOUT_MINUTES)
        result = await self.db.execute(
            update(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.RUNNING.value,
                BackgroundJob.started_at < cutoff,
            )
            .values(status=JobStatus.PENDING.value, scheduled_for=datetime.now(timezone.utc))
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning("job_processor_requeued_stale_jobs", count=result.rowcount)
        return result.rowcount or 0

    async def _fetch_pending_jobs(self, limit: int) -> list[BackgroundJob]:
        """
        Fetch pending jobs that are ready to run.
        Uses SELECT FOR UPDATE SKIP LOCKED so concurrent workers never claim the same row.
        """
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.PENDING.value,
                BackgroundJob.scheduled_for <= now,
                BackgroundJob.attempts < BackgroundJob.max_attempts,
            )
            .order_by(BackgroundJob.scheduled_for)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def _process_single_job(self, job: BackgroundJob) -> Optional[bool]:
        """
        Process a single job. Returns True on success, False on a recorded failure,
        None when another worker claimed the job after this batch was fetched.
        """
        # Row locks are released by the first commit of the batch
        if not await self._claim_job(job):
            logger.info("job_already_claimed", job_id=str(job.id), status=job.status)
            return None

        job_id = str(job.id)
        job_type = job.job_type
        structlog.contextvars.bind_contextvars(correlation_id=job_id, job_type=job_type)

        logger.info("job_processing_start", job_id=job_id, job_type=job_type, attempt=job.attempts)

        succeeded = False
        tracer = get_tracer(__name__)
        with tracer.start_as_current_span(f"job_process:{job_type}") as span:
            span.set_attribute("job_id", job_id)
            span.set_attribute("tenant_id", str(job.tenant_id) if job.tenant_id else "system")

            try:
                handler_cls = get_handler_factory(job_type)
                handler = handler_cls()
                result = await asyncio.wait_for(
                    handler.execute(job, self.db),
                    timeout=handler.timeout_seconds
                )

                job.status = JobStatus.COMPLETED.value
                job.completed_at = datetime.now(timezone.utc)
                job.result = result
                job.error_message = None
                succeeded = True

                logger.info("job_processing_success", job_id=job_id, job_type=job_type)

            except asyncio.TimeoutError:
                logger.error("job_processing_timeout", job_id=job_id, job_type=job_type)
                await self._recover_session(job)
                self._schedule_retry(job, "Job timed out")

            except Exception as e:  # noqa: BLE001 - Intentional catch-all for job isolation
                logger.error("job_processing_failed", job_id=job_id, job_type=job_type, error=str(e))
                await self._recover_session(job)
                self._schedule_retry(job, f"{type(e).__name__}: {e}")

        await self.db.commit()
        if job.status == JobStatus.DEAD_LETTER.value:
            await self._handle_dead_letter(job)

        structlog.contextvars.unbind_contextvars("correlation_id", "job_type", "sync_job_id", "tenant_id")
        return succeeded

    async def _claim_job(self, job: BackgroundJob) -> bool:
        """
        Move a pending row to RUNNING in one conditional UPDATE.
        Returns False when another worker claimed it first.
        """
        result = await self.db.execute(
            update(BackgroundJob)
            .where(BackgroundJob.id == job.id, BackgroundJob.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
                attempts=BackgroundJob.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(job)
        return result.rowcount == 1

    async def _handle_dead_letter(self, job: BackgroundJob) -> None:
        handler_cls = HANDLER_REGISTRY.get(job.job_type)
        if handler_cls is None:
            return
        try:
            await handler_cls().on_dead_letter(job, self.db)
        except Exception as e:  # noqa: BLE001 - queue row is already terminal
            logger.error("job_dead_letter_hook_failed", job_id=str(job.id), job_type=job.job_type, error=str(e))
            await self._recover_session(job)

    async def _recover_session(self, job: BackgroundJob) -> None:
        """Discard whatever the handler left uncommitted and reload the job row."""
        await self.db.rollback()
        await self.db.refresh(job)

    @staticmethod
    def _schedule_retry(job: BackgroundJob, error: str) -> None:
        job.error_message = error[:2000]

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.DEAD_LETTER.value
            job.completed_at = datetime.now(timezone.utc)
            BACKGROUND_JOBS_DEAD_LETTERED.labels(job_type=job.job_type).inc()
            logger.error("job_moved_to_dead_letter", job_id=str(job.id), attempts=job.attempts)
        else:
            backoff_seconds = BACKOFF_BASE_SECONDS * (2 ** (job.attempts - 1))
            job.status = JobStatus.PENDING.value
            job.scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=backoff_seconds)


# ==================== Job Creation Helpers ====================


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    tenant_id: Optional[UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
    scheduled_for: Optional[datetime] = None,
    max_attempts: int = 3,
    deduplication_key: Optional[str] = None,
) -> BackgroundJob:
    """
    Enqueue a new background job.

    When `deduplication_key` matches an existing job, that job is returned
    unchanged instead of inserting a duplicate.

    Usage:
        job = await enqueue_job(
            db,
            job_type=JobType.RESOURCE_INVENTORY,
            tenant_id=tenant.id,
        )
    """
    job_type_value = job_type.value if hasattr(job_type, "value") else job_type

    if deduplication_key:
        existing = await db.execute(
            select(BackgroundJob).where(BackgroundJob.deduplication_key == deduplication_key)
        )
        found = existing.scalar_one_or_none()
        if found is not None:
            logger.info("job_enqueue_deduplicated", job_id=str(found.id), deduplication_key=deduplication_key)
            return found

    now = datetime.now(timezone.utc)
    job = BackgroundJob(
        id=uuid4(),
        job_type=job_type_value,
        tenant_id=tenant_id,
        payload=payload,
        deduplication_key=deduplication_key,
        status=JobStatus.PENDING.value,
        attempts=0,
        scheduled_for=scheduled_for or now,
        max_attempts=max_attempts,
        created_at=now
    )

    db.add(job)
    await db.commit()

    BACKGROUND_JOBS_ENQUEUED.labels(job_type=job_type_value).inc()
    logger.info(
        "job_enqueued",
        job_id=str(job.id),
        job_type=job_type_value,
        tenant_id=str(tenant_id) if tenant_id else None
    )

    return job
