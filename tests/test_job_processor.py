"""
Tests for the durable background job queue.

Covers:
- Job state machine (pending -> running -> completed)
- Retry with exponential backoff and dead letter on max attempts
- Deduplicated enqueueing and stale job recovery
- Handler registry
- Atomic claiming and closing out dead-lettered sync chunks
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.background_job import BackgroundJob, JobStatus, JobType
from costsync.models.sync_job import SyncStatus
from costsync.modules.governance.domain.jobs.handlers import get_handler_factory
from costsync.modules.governance.domain.jobs.handlers.costs import CostSyncChunkHandler, ResourceInventoryHandler
from costsync.modules.governance.domain.jobs.processor import (
    BACKOFF_BASE_SECONDS,
    JOB_LOCK_TIMEOUT_MINUTES,
    JobProcessor,
    enqueue_job,
)
from costsync.modules.ingestion.domain.service import CostSyncService

HANDLER_PATH = "costsync.modules.governance.domain.jobs.processor.get_handler_factory"


class SucceedingHandler:
    timeout_seconds = 5
    seen = []

    async def execute(self, job, db):
        SucceedingHandler.seen.append(job.status)
        return {"status": "ok"}


class FailingHandler:
    timeout_seconds = 5

    async def execute(self, job, db):
        raise RuntimeError("Azure unavailable")


def _aware(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TestEnqueueJob:
    async def test_enqueue_creates_pending_job(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id, payload={"a": 1})

        assert job.status == JobStatus.PENDING.value
        assert job.job_type == "resource_inventory"
        assert job.attempts == 0
        assert job.max_attempts == 3

    async def test_deduplication_key_returns_existing(self, db, tenant):
        first = await enqueue_job(db, JobType.COST_SYNC_CHUNK, tenant_id=tenant.id, deduplication_key="cost_sync:x:0")
        second = await enqueue_job(db, JobType.COST_SYNC_CHUNK, tenant_id=tenant.id, deduplication_key="cost_sync:x:0")

        assert first.id == second.id


class TestJobProcessor:
    async def test_empty_queue(self, db):
        results = await JobProcessor(db).process_pending_jobs()

        assert results["processed"] == 0
        assert results["succeeded"] == 0
        assert results["failed"] == 0

    async def test_successful_job_completes(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id)
        SucceedingHandler.seen.clear()

        with patch(HANDLER_PATH, return_value=SucceedingHandler):
            results = await JobProcessor(db).process_pending_jobs()

        assert results["succeeded"] == 1
        assert SucceedingHandler.seen == [JobStatus.RUNNING.value]
        assert job.status == JobStatus.COMPLETED.value
        assert job.result == {"status": "ok"}
        assert job.attempts == 1

    async def test_future_jobs_wait(self, db, tenant):
        await enqueue_job(
            db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id,
            scheduled_for=datetime.now(timezone.utc) + timedelta(minutes=5),
        )

        with patch(HANDLER_PATH, return_value=SucceedingHandler):
            results = await JobProcessor(db).process_pending_jobs()

        assert results["processed"] == 0

    async def test_failure_schedules_retry_with_backoff(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id)

        with patch(HANDLER_PATH, return_value=FailingHandler):
            results = await JobProcessor(db).process_pending_jobs()

        assert results["failed"] == 1
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert job.error_message == "RuntimeError: Azure unavailable"
        delay = (_aware(job.scheduled_for) - datetime.now(timezone.utc)).total_seconds()
        assert BACKOFF_BASE_SECONDS - 5 < delay <= BACKOFF_BASE_SECONDS

    async def test_max_attempts_moves_to_dead_letter(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id, max_attempts=1)

        with patch(HANDLER_PATH, return_value=FailingHandler):
            await JobProcessor(db).process_pending_jobs()

        assert job.status == JobStatus.DEAD_LETTER.value
        assert job.completed_at is not None

    async def test_unknown_job_type_fails_job(self, db):
        job = await enqueue_job(db, "nonexistent_type", max_attempts=1)

        results = await JobProcessor(db).process_pending_jobs()

        assert results["failed"] == 1
        assert "No handler registered" in job.error_message

    async def test_stale_running_job_requeued(self, db, tenant):
        job = BackgroundJob(
            id=uuid4(),
            job_type=JobType.RESOURCE_INVENTORY.value,
            tenant_id=tenant.id,
            status=JobStatus.RUNNING.value,
            attempts=1,
            max_attempts=3,
            scheduled_for=datetime.now(timezone.utc) - timedelta(hours=1),
            started_at=datetime.now(timezone.utc) - timedelta(minutes=JOB_LOCK_TIMEOUT_MINUTES + 5),
        )
        db.add(job)
        await db.commit()

        with patch(HANDLER_PATH, return_value=SucceedingHandler):
            results = await JobProcessor(db).process_pending_jobs()

        assert results["succeeded"] == 1
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempts == 2


class TestHandlers:
    def test_registry(self):
        assert get_handler_factory(JobType.COST_SYNC_CHUNK.value) is CostSyncChunkHandler
        assert get_handler_factory(JobType.RESOURCE_INVENTORY.value) is ResourceInventoryHandler

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            get_handler_factory("nope")

    async def test_chunk_handler_requires_sync_job_id(self, db):
        job = BackgroundJob(job_type=JobType.COST_SYNC_CHUNK.value, payload={})
        with pytest.raises(ValueError, match="sync_job_id"):
            await CostSyncChunkHandler().execute(job, db)

    async def test_chunk_handler_runs_sync_service(self, db):
        sync_job_id = uuid4()
        job = BackgroundJob(
            job_type=JobType.COST_SYNC_CHUNK.value,
            payload={"sync_job_id": str(sync_job_id), "chunk_index": 2},
        )

        with patch("costsync.modules.ingestion.domain.service.CostSyncService.process_chunk") as process_chunk:
            process_chunk.return_value = {"status": "running"}
            result = await CostSyncChunkHandler().execute(job, db)

        process_chunk.assert_awaited_once_with(sync_job_id, 2)
        assert result == {"status": "running"}


class TestClaiming:
    async def test_only_one_worker_claims_a_row(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id)

        async with AsyncSession(bind=db.bind, expire_on_commit=False) as other_db:
            rival_copy = await other_db.get(BackgroundJob, job.id)
            assert rival_copy.status == JobStatus.PENDING.value

            assert await JobProcessor(db)._claim_job(job) is True
            assert await JobProcessor(other_db)._claim_job(rival_copy) is False

        assert job.status == JobStatus.RUNNING.value
        assert job.attempts == 1

    async def test_claimed_row_is_not_run_twice(self, db, tenant):
        job = await enqueue_job(db, JobType.RESOURCE_INVENTORY, tenant_id=tenant.id)
        SucceedingHandler.seen.clear()

        async with AsyncSession(bind=db.bind, expire_on_commit=False) as other_db:
            rival_copy = await other_db.get(BackgroundJob, job.id)
            with patch(HANDLER_PATH, return_value=SucceedingHandler):
                assert await JobProcessor(db)._process_single_job(job) is True
                assert await JobProcessor(other_db)._process_single_job(rival_copy) is None

        assert SucceedingHandler.seen == [JobStatus.RUNNING.value]
        assert job.attempts == 1


class TestDeadLetteredChunks:
    async def test_timed_out_chunk_closes_sync_job(self, db, connection):
        today = datetime.now(timezone.utc).date()
        sync_job = await CostSyncService(db).start_historical_sync(connection.tenant_id, today, today)
        queued = (await db.execute(select(BackgroundJob))).scalar_one()
        queued.max_attempts = 1
        await db.commit()

        async def stalled_fetch(self, job, chunk):
            await asyncio.sleep(5)

        with patch.object(CostSyncService, "_fetch_and_store", stalled_fetch), \
                patch.object(CostSyncChunkHandler, "timeout_seconds", 0.05):
            results = await JobProcessor(db).process_pending_jobs()

        assert results["failed"] == 1
        assert queued.status == JobStatus.DEAD_LETTER.value
        assert queued.error_message == "Job timed out"

        await db.refresh(sync_job)
        assert sync_job.status == SyncStatus.FAILED.value
        assert sync_job.failed_chunks == 1
        assert sync_job.chunk_details[0]["status"] == "failed"
        assert sync_job.chunk_details[0]["error"] == "dead_letter: Job timed out"

        # A new sync for the tenant is accepted
        again = await CostSyncService(db).start_historical_sync(connection.tenant_id, today, today)
        assert again.status == SyncStatus.RUNNING.value

    async def test_dead_lettered_chunk_hands_off_to_next(self, db, connection):
        today = datetime.now(timezone.utc).date()
        start = today.replace(day=1) - timedelta(days=1)
        sync_job = await CostSyncService(db).start_historical_sync(connection.tenant_id, start, today)
        queued = (await db.execute(select(BackgroundJob))).scalar_one()
        queued.max_attempts = 1
        await db.commit()

        with patch.object(CostSyncService, "process_chunk", side_effect=RuntimeError("worker crashed")):
            await JobProcessor(db).process_pending_jobs()

        await db.refresh(sync_job)
        assert sync_job.status == SyncStatus.RUNNING.value
        assert sync_job.chunk_details[0]["error"] == "dead_letter: RuntimeError: worker crashed"

        jobs = (await db.execute(select(BackgroundJob))).scalars().all()
        assert sorted(j.payload["chunk_index"] for j in jobs) == [0, 1]
