"""
Chain Invoker

Hands the next chunk of a sync job to a fresh unit of work by enqueueing a
durable background job, scheduled a few seconds out so one job's chunks never
overlap. The checkpoint travels in the sync job row; the payload only names
which row and which chunk.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.background_job import BackgroundJob, JobType
from costsync.models.sync_job import CostSyncJob
from costsync.modules.governance.domain.jobs.processor import enqueue_job
from costsync.shared.core.config import get_settings

logger = structlog.get_logger()


def chunk_dedup_key(sync_job_id, chunk_index: int) -> str:
    return f"cost_sync:{sync_job_id}:{chunk_index}"


class ChainInvoker:
    def __init__(self, db: AsyncSession, delay_seconds: Optional[int] = None):
        self.db = db
        self.delay_seconds = get_settings().SYNC_CHAIN_DELAY_SECONDS if delay_seconds is None else delay_seconds

    async def schedule_chunk(self, job: CostSyncJob, chunk_index: int, immediate: bool = False) -> BackgroundJob:
        """
        Enqueue processing of `chunk_index`. Re-scheduling the same chunk returns
        the already queued job instead of creating a second one.
        """
        delay = 0 if immediate else self.delay_seconds
        queued = await enqueue_job(
            self.db,
            job_type=JobType.COST_SYNC_CHUNK,
            tenant_id=job.tenant_id,
            payload={"sync_job_id": str(job.id), "chunk_index": chunk_index},
            scheduled_for=datetime.now(timezone.utc) + timedelta(seconds=delay),
            deduplication_key=chunk_dedup_key(job.id, chunk_index),
        )
        logger.info(
            "sync_chunk_scheduled",
            sync_job_id=str(job.id),
            chunk_index=chunk_index,
            background_job_id=str(queued.id),
            delay_seconds=delay,
        )
        return queued
