import asyncio
import uuid
import structlog
from celery import shared_task

from costsync.shared.db.session import async_session_maker

logger = structlog.get_logger()


# Helper to run async code in sync Celery task
def run_async(coro):
    return asyncio.run(coro)


@shared_task(name="jobs.process_pending")
def process_pending_jobs():
    """Drain due background jobs (sync chunks, inventory refreshes)."""
    return run_async(_process_pending_jobs_logic())


async def _process_pending_jobs_logic():
    from costsync.modules.governance.domain.jobs.processor import JobProcessor

    async with async_session_maker() as db:
        results = await JobProcessor(db).process_pending_jobs()
    return {k: v for k, v in results.items() if k != "errors"}


@shared_task(name="scheduler.incremental_cost_sync")
def run_incremental_cost_sync():
    """Start a rolling short-range sync for every enabled tenant."""
    return run_async(_incremental_cost_sync_logic())


async def _incremental_cost_sync_logic():
    from costsync.modules.ingestion.domain.service import CostSyncService

    structlog.contextvars.bind_contextvars(correlation_id=str(uuid.uuid4()), job_type="scheduler_incremental_sync")
    try:
        async with async_session_maker() as db:
            return await CostSyncService(db).enqueue_incremental_syncs()
    finally:
        structlog.contextvars.clear_contextvars()
