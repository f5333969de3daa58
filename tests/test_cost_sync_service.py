"""
Tests for the chunked historical cost sync.

Covers:
- Job creation and first-chunk hand-off
- Chunk-by-chunk processing with per-chunk failure isolation
- Final status (completed vs failed) and progress counters
- Safe redelivery of chunk work
- Per-tenant mutual exclusion and the incremental sweep
- Chunk deadlines, abandoned chunks and the hand-off delay
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from costsync.models.azure_connection import AzureConnection
from costsync.models.background_job import BackgroundJob, JobType
from costsync.models.cloud import CostRecord
from costsync.models.sync_job import CostSyncJob, SyncKind, SyncStatus
from costsync.models.tenant import Tenant
from costsync.modules.ingestion.domain.chain import ChainInvoker, chunk_dedup_key
from costsync.modules.ingestion.domain.progress import SyncProgressTracker, next_chunk_index
from costsync.modules.ingestion.domain.service import CostSyncService
from costsync.schemas.costs import FetchResult
from costsync.shared.adapters.azure_auth import AccessToken
from costsync.shared.core.config import get_settings
from costsync.shared.core.exceptions import (
    CredentialsNotFound,
    FetchFailed,
    InvalidRange,
    RateLimited,
    StoreWriteError,
    SyncAlreadyRunning,
)

TODAY = date(2025, 6, 15)


def _rows_for(chunk, count=1):
    return [
        {
            "UsageDate": int(chunk.start.strftime("%Y%m%d")),
            "ResourceId": f"/subscriptions/sub-123/resourceGroups/rg/providers/x/vm{i}",
            "ResourceGroup": "rg",
            "MeterCategory": "Virtual Machines",
            "MeterSubcategory": "D2s v5",
            "Meter": "D2s v5",
            "Cost": 4.0,
            "Currency": "USD",
        }
        for i in range(count)
    ]


def _fetcher(fail_indexes=(), error=None):
    fetcher = MagicMock()

    async def fetch_chunk(token, subscription_id, chunk):
        if chunk.index in fail_indexes:
            raise error or FetchFailed("Azure cost query failed with HTTP 500")
        return FetchResult(columns=[], rows=_rows_for(chunk), pages=1)

    fetcher.fetch_chunk = AsyncMock(side_effect=fetch_chunk)
    return fetcher


def _tokens():
    tokens = MagicMock()
    tokens.get_connection = AsyncMock()
    tokens.get_token = AsyncMock(return_value=AccessToken(token="tok", subscription_id="sub-123", expires_on=0))
    return tokens


def _service(db, fetcher=None, tokens=None):
    return CostSyncService(
        db,
        token_provider=tokens or _tokens(),
        fetcher=fetcher or _fetcher(),
        chain=ChainInvoker(db, delay_seconds=0),
    )


async def _drain(service, job):
    """Run chunks in order the way the job queue would deliver them."""
    results = []
    index = next_chunk_index(job)
    while index is not None:
        result = await service.process_chunk(job.id, index)
        results.append(result)
        index = result["next_chunk_index"]
    return results


async def _queued_chunk_jobs(db):
    result = await db.execute(
        select(BackgroundJob).where(BackgroundJob.job_type == JobType.COST_SYNC_CHUNK.value)
    )
    return list(result.scalars().all())


class TestStartHistoricalSync:
    async def test_creates_running_job_and_queues_first_chunk(self, db, connection):
        service = _service(db)

        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 1, 10), date(2025, 3, 5), today=TODAY
        )

        assert job.status == SyncStatus.RUNNING.value
        assert job.total_chunks == 3
        assert job.completed_chunks == job.failed_chunks == job.records_synced == 0
        assert [c["status"] for c in job.chunk_details] == ["pending"] * 3
        assert job.chunk_details[0]["label"] == "2025-01-10 to 2025-01-31"

        queued = await _queued_chunk_jobs(db)
        assert len(queued) == 1
        assert queued[0].payload == {"sync_job_id": str(job.id), "chunk_index": 0}
        assert queued[0].deduplication_key == chunk_dedup_key(job.id, 0)

    async def test_end_date_defaults_to_today(self, db, connection):
        job = await _service(db).start_historical_sync(connection.tenant_id, date(2025, 6, 1), today=TODAY)
        assert job.end_date == TODAY
        assert job.total_chunks == 1

    async def test_reversed_range_rejected_before_job_exists(self, db, connection):
        with pytest.raises(InvalidRange):
            await _service(db).start_historical_sync(
                connection.tenant_id, date(2025, 3, 1), date(2025, 2, 1), today=TODAY
            )
        assert await _queued_chunk_jobs(db) == []

    async def test_start_beyond_history_window_rejected(self, db, connection):
        with pytest.raises(InvalidRange):
            await _service(db).start_historical_sync(
                connection.tenant_id, date(2024, 1, 1), date(2024, 2, 1), today=TODAY
            )

    async def test_missing_credentials(self, db, tenant):
        # Default token provider reads the store
        service = CostSyncService(db, fetcher=_fetcher(), chain=ChainInvoker(db, delay_seconds=0))
        with pytest.raises(CredentialsNotFound):
            await service.start_historical_sync(tenant.id, date(2025, 5, 1), today=TODAY)

    async def test_second_active_sync_rejected(self, db, connection):
        service = _service(db)
        first = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)

        with pytest.raises(SyncAlreadyRunning) as exc:
            await service.start_historical_sync(connection.tenant_id, date(2025, 4, 1), today=TODAY)

        assert exc.value.status_code == 409
        assert exc.value.details["sync_job_id"] == str(first.id)

    async def test_incremental_does_not_block_historical(self, db, connection):
        service = _service(db)
        await service.start_historical_sync(
            connection.tenant_id, date(2025, 6, 8), sync_type=SyncKind.INCREMENTAL.value, today=TODAY
        )
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)
        assert job.sync_type == SyncKind.HISTORICAL.value


class TestProcessChunks:
    async def test_all_chunks_succeed(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 1, 1), date(2025, 5, 20), today=TODAY
        )

        results = await _drain(service, job)

        assert len(results) == 5
        assert job.status == SyncStatus.COMPLETED.value
        assert job.completed_chunks == 5
        assert job.failed_chunks == 0
        assert job.records_synced == 5
        assert job.completed_at is not None
        assert job.current_operation is None
        assert job.estimated_completion_at is None
        assert all(c["status"] == "completed" and c["records"] == 1 for c in job.chunk_details)

        stored = (await db.execute(select(func.count(CostRecord.id)))).scalar_one()
        assert stored == 5
        assert len(await _queued_chunk_jobs(db)) == 5

    async def test_failed_chunk_does_not_stop_the_job(self, db, connection):
        fetcher = _fetcher(fail_indexes={2})
        service = _service(db, fetcher=fetcher)
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 1, 1), date(2025, 5, 20), today=TODAY
        )

        await _drain(service, job)

        assert fetcher.fetch_chunk.await_count == 5
        assert job.status == SyncStatus.COMPLETED.value
        assert job.completed_chunks == 4
        assert job.failed_chunks == 1
        assert job.records_synced == 4
        failed = job.chunk_details[2]
        assert failed["status"] == "failed"
        assert failed["error"].startswith("fetch_failed:")

    async def test_all_chunks_failed_fails_job(self, db, connection):
        service = _service(db, fetcher=_fetcher(fail_indexes={0, 1}, error=RateLimited()))
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 4, 1), date(2025, 5, 20), today=TODAY
        )

        await _drain(service, job)

        assert job.status == SyncStatus.FAILED.value
        assert job.failed_chunks == 2
        assert job.error_message == "All chunks failed"
        assert job.chunk_details[0]["error"].startswith("rate_limited:")

    async def test_unexpected_error_is_recorded_on_chunk(self, db, connection):
        service = _service(db, fetcher=_fetcher(fail_indexes={0}, error=RuntimeError("boom")))
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)

        result = await service.process_chunk(job.id, 0)

        assert result["status"] == SyncStatus.FAILED.value
        assert job.chunk_details[0]["error"] == "RuntimeError: boom"

    async def test_progress_after_each_chunk(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 3, 1), date(2025, 5, 31), today=TODAY
        )

        result = await service.process_chunk(job.id, 0)

        assert result == {"status": "running", "chunk_index": 0, "records": 1, "next_chunk_index": 1}
        assert job.completed_chunks == 1
        assert job.chunk_details[0]["completed_at"] is not None
        assert job.chunk_details[1]["status"] == "pending"
        assert job.estimated_completion_at is not None
        assert job.current_resource_name == "2025-03-01 to 2025-03-31"

    async def test_reingest_does_not_double_count_storage(self, db, connection):
        service = _service(db)
        first = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        await _drain(service, first)
        second = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        await _drain(service, second)

        stored = (await db.execute(select(func.count(CostRecord.id)))).scalar_one()
        assert stored == 1

    async def test_updates_connection_last_synced(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)

        await service.process_chunk(job.id, 0)

        await db.refresh(connection)
        assert connection.last_synced_at is not None


class TestRedelivery:
    async def test_missing_job_is_skipped(self, db):
        result = await _service(db).process_chunk(uuid4(), 0)
        assert result == {"status": "skipped", "reason": "sync_job_not_found"}

    async def test_terminal_job_is_noop(self, db, connection):
        fetcher = _fetcher()
        service = _service(db, fetcher=fetcher)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        await _drain(service, job)
        calls = fetcher.fetch_chunk.await_count

        result = await service.process_chunk(job.id, 0)

        assert result["reason"] == "job_terminal"
        assert fetcher.fetch_chunk.await_count == calls
        assert job.completed_chunks == 1

    async def test_terminal_chunk_only_reissues_handoff(self, db, connection):
        fetcher = _fetcher()
        service = _service(db, fetcher=fetcher)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 4, 1), date(2025, 5, 31), today=TODAY)
        await service.process_chunk(job.id, 0)

        result = await service.process_chunk(job.id, 0)

        assert fetcher.fetch_chunk.await_count == 1
        assert result["next_chunk_index"] == 1
        assert job.completed_chunks == 1
        # Hand-off for chunk 1 is deduplicated
        assert len(await _queued_chunk_jobs(db)) == 2

    async def test_interrupted_chunk_is_refetched(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        await SyncProgressTracker(db).mark_chunk_running(job, 0)

        assert next_chunk_index(job) == 0
        await service.process_chunk(job.id, 0)

        assert job.status == SyncStatus.COMPLETED.value
        assert job.completed_chunks == 1

    async def test_out_of_range_index(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)

        with pytest.raises(ValueError):
            await service.process_chunk(job.id, 7)


class TestProgressTracker:
    async def test_duplicate_terminal_transition_ignored(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        tracker = SyncProgressTracker(db)

        await tracker.record_chunk_success(job, 0, 10)
        await tracker.record_chunk_success(job, 0, 10)
        await tracker.record_chunk_failure(job, 0, "late failure")

        assert job.completed_chunks == 1
        assert job.failed_chunks == 0
        assert job.records_synced == 10

    async def test_throughput_and_eta(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 3, 1), date(2025, 5, 31), today=TODAY)
        job.started_at = datetime.now(timezone.utc) - timedelta(seconds=100)
        await db.commit()

        await SyncProgressTracker(db).record_chunk_success(job, 0, 500)

        assert 4.5 <= job.processing_rate <= 5.0
        eta = job.estimated_completion_at
        if eta.tzinfo is None:
            eta = eta.replace(tzinfo=timezone.utc)
        remaining = (eta - datetime.now(timezone.utc)).total_seconds()
        assert 180 < remaining <= 201

    async def test_find_active_job_filters_by_kind(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)
        tracker = SyncProgressTracker(db)

        assert (await tracker.find_active_job(connection.tenant_id)).id == job.id
        assert await tracker.find_active_job(connection.tenant_id, SyncKind.INCREMENTAL.value) is None


class TestIncrementalSweep:
    async def test_starts_enabled_tenants_only(self, db, connection):
        disabled = Tenant(name="Fabrikam", is_enabled=False)
        db.add(disabled)
        await db.flush()
        db.add(AzureConnection(
            tenant_id=disabled.id,
            azure_tenant_id="t",
            client_id="c",
            subscription_id="s",
            client_secret="x",
        ))
        await db.commit()

        service = CostSyncService(db, fetcher=_fetcher(), chain=ChainInvoker(db, delay_seconds=0))
        first = await service.enqueue_incremental_syncs(today=TODAY)
        second = await service.enqueue_incremental_syncs(today=TODAY)

        assert first == {"tenants": 1, "started": 1, "skipped": 0, "failed": 0}
        assert second == {"tenants": 1, "started": 0, "skipped": 1, "failed": 0}

        job = await SyncProgressTracker(db).find_active_job(connection.tenant_id, SyncKind.INCREMENTAL.value)
        assert job.start_date == TODAY - timedelta(days=7)
        assert job.end_date == TODAY

    async def test_one_tenant_error_does_not_stop_the_sweep(self, db, connection):
        other = Tenant(name="Fabrikam")
        db.add(other)
        await db.flush()
        db.add(AzureConnection(
            tenant_id=other.id,
            azure_tenant_id="t",
            client_id="c",
            subscription_id="s",
            client_secret="x",
            is_active=True,
        ))
        await db.commit()

        tokens = _tokens()

        async def get_connection(tenant_id):
            if tenant_id == other.id:
                raise StoreWriteError("connection lookup failed")

        tokens.get_connection = AsyncMock(side_effect=get_connection)
        result = await _service(db, tokens=tokens).enqueue_incremental_syncs(today=TODAY)

        assert result == {"tenants": 2, "started": 1, "skipped": 0, "failed": 1}
        assert await SyncProgressTracker(db).find_active_job(connection.tenant_id) is not None


def _slow_fetcher(slow_indexes):
    fetcher = _fetcher()
    fast = fetcher.fetch_chunk.side_effect

    async def fetch_chunk(token, subscription_id, chunk):
        if chunk.index in slow_indexes:
            await asyncio.sleep(5)
        return await fast(token, subscription_id, chunk)

    fetcher.fetch_chunk = AsyncMock(side_effect=fetch_chunk)
    return fetcher


class TestChunkDeadline:
    async def test_slow_chunk_is_failed_and_sync_moves_on(self, db, connection):
        service = _service(db, fetcher=_slow_fetcher({0}))
        service.chunk_timeout = 0.05
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 4, 1), date(2025, 5, 31), today=TODAY
        )

        await _drain(service, job)

        assert job.status == SyncStatus.COMPLETED.value
        assert job.failed_chunks == 1
        assert job.completed_chunks == 1
        assert job.chunk_details[0]["status"] == "failed"
        assert job.chunk_details[0]["error"].startswith("chunk_timeout:")

        # The tenant is free to start again
        again = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)
        assert again.status == SyncStatus.RUNNING.value

    async def test_single_slow_chunk_fails_job(self, db, connection):
        service = _service(db, fetcher=_slow_fetcher({0}))
        service.chunk_timeout = 0.05
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)

        result = await service.process_chunk(job.id, 0)

        assert result["status"] == SyncStatus.FAILED.value
        assert job.error_message == "All chunks failed"


class TestAbandonChunk:
    async def test_abandoned_chunk_is_failed_and_next_is_queued(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 4, 1), date(2025, 5, 31), today=TODAY
        )
        await SyncProgressTracker(db).mark_chunk_running(job, 0)

        result = await service.abandon_chunk(job.id, 0, "Job timed out")

        assert result["next_chunk_index"] == 1
        assert job.chunk_details[0]["status"] == "failed"
        assert job.chunk_details[0]["error"] == "dead_letter: Job timed out"
        assert job.failed_chunks == 1
        assert len(await _queued_chunk_jobs(db)) == 2

    async def test_abandoning_last_chunk_finishes_job(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)

        await service.abandon_chunk(job.id, 0, "Job timed out")

        assert job.status == SyncStatus.FAILED.value
        assert await SyncProgressTracker(db).find_active_job(connection.tenant_id) is None

    async def test_terminal_job_is_left_alone(self, db, connection):
        service = _service(db)
        job = await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), date(2025, 5, 31), today=TODAY)
        await _drain(service, job)

        assert await service.abandon_chunk(job.id, 0, "late") is None
        assert job.status == SyncStatus.COMPLETED.value
        assert job.failed_chunks == 0


class TestStartQueueFailure:
    async def test_queue_failure_closes_the_job(self, db, connection):
        chain = MagicMock()
        chain.schedule_chunk = AsyncMock(side_effect=RuntimeError("queue unavailable"))
        service = CostSyncService(db, token_provider=_tokens(), fetcher=_fetcher(), chain=chain)

        with pytest.raises(RuntimeError):
            await service.start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)

        job = (await db.execute(select(CostSyncJob))).scalar_one()
        assert job.status == SyncStatus.FAILED.value
        assert job.error_message == "Could not queue first chunk: RuntimeError: queue unavailable"
        assert job.completed_at is not None

        retried = await _service(db).start_historical_sync(connection.tenant_id, date(2025, 5, 1), today=TODAY)
        assert retried.status == SyncStatus.RUNNING.value


class TestHandOffDelay:
    async def test_next_chunk_is_scheduled_after_chain_delay(self, db, connection):
        service = CostSyncService(db, token_provider=_tokens(), fetcher=_fetcher(), chain=ChainInvoker(db))
        job = await service.start_historical_sync(
            connection.tenant_id, date(2025, 4, 1), date(2025, 5, 31), today=TODAY
        )
        first = (await _queued_chunk_jobs(db))[0]
        assert (_aware(first.scheduled_for) - datetime.now(timezone.utc)).total_seconds() <= 0

        await service.process_chunk(job.id, 0)

        queued = {j.payload["chunk_index"]: j for j in await _queued_chunk_jobs(db)}
        delay = (_aware(queued[1].scheduled_for) - datetime.now(timezone.utc)).total_seconds()
        chain_delay = get_settings().SYNC_CHAIN_DELAY_SECONDS
        assert chain_delay == 3
        assert chain_delay - 2 < delay <= chain_delay


def _aware(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
