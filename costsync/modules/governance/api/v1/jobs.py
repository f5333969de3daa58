"""
Background Jobs API - Job Queue Management

- Processing due jobs (called by an external cron or manually)
- Viewing queue status
"""

from fastapi import APIRouter, Depends, HTTPException, Query, BackgroundTasks
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
import structlog
import secrets

from costsync.models.background_job import BackgroundJob, JobStatus
from costsync.modules.governance.domain.jobs.processor import JobProcessor
from costsync.shared.core.auth import require_admin_key
from costsync.shared.core.config import get_settings
from costsync.shared.db.session import get_db, async_session_maker

router = APIRouter(tags=["Background Jobs"])
logger = structlog.get_logger()


class JobStatusResponse(BaseModel):
    """Response with job queue statistics."""
    pending: int
    running: int
    completed: int
    failed: int
    dead_letter: int


@router.get("/status", response_model=JobStatusResponse, dependencies=[Depends(require_admin_key)])
async def get_job_queue_status(db: AsyncSession = Depends(get_db)):
    """Current job queue statistics."""
    result = await db.execute(
        select(BackgroundJob.status, func.count(BackgroundJob.id))
        .group_by(BackgroundJob.status)
    )
    counts = {row[0]: row[1] for row in result.all()}

    return JobStatusResponse(
        pending=counts.get(JobStatus.PENDING.value, 0),
        running=counts.get(JobStatus.RUNNING.value, 0),
        completed=counts.get(JobStatus.COMPLETED.value, 0),
        failed=counts.get(JobStatus.FAILED.value, 0),
        dead_letter=counts.get(JobStatus.DEAD_LETTER.value, 0)
    )


async def run_processor() -> None:
    async with async_session_maker() as session:
        processor = JobProcessor(session)
        await processor.process_pending_jobs()


@router.post("/internal/process")
async def internal_process_jobs(
    background_tasks: BackgroundTasks,
    secret: str = Query(description="Internal secret for the external scheduler")
):
    """
    Internal endpoint for an external scheduler (asynchronous).
    Acknowledges immediately; due jobs are drained after the response is sent.
    """
    settings = get_settings()

    expected_secret = settings.INTERNAL_JOB_SECRET
    if not expected_secret or not secrets.compare_digest(secret, expected_secret):
        logger.warning("internal_job_secret_rejected")
        raise HTTPException(status_code=403, detail="Invalid secret")

    background_tasks.add_task(run_processor)

    return {"status": "accepted", "message": "Job processing started in background"}
