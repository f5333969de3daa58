"""
Cost Sync Service

Entry points for chunked Azure cost synchronization:
- start_historical_sync: validate, plan chunks, create the job, queue chunk 0
- process_chunk: one unit of work (token, fetch, dedupe, upsert, checkpoint, chain)
- enqueue_incremental_syncs: scheduled sweep over enabled tenants
"""
import asyncio
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.azure_connection import AzureConnection
from costsync.models.sync_job import CostSyncJob, SyncKind
from costsync.models.tenant import Tenant
from costsync.modules.ingestion.domain.chain import ChainInvoker
from costsync.modules.ingestion.domain.chunking import plan_chunks, validate_history_window
from costsync.modules.ingestion.domain.normalizer import CostDeduplicator
from costsync.modules.ingestion.domain.persistence import CostUpserter
from costsync.modules.ingestion.domain.progress import SyncProgressTracker, chunk_range, next_chunk_index
from costsync.schemas.costs import ChunkRange
from costsync.shared.adapters.azure_auth import AzureTokenProvider
from costsync.shared.adapters.azure_costs import AzureCostFetcher
from costsync.shared.core.config import get_settings
from costsync.shared.core.exceptions import (
    ChunkTimedOut,
    CostSyncException,
    CredentialsNotFound,
    SyncAlreadyRunning,
)
from costsync.shared.core.ops_metrics import SYNC_CHUNK_DURATION
from costsync.shared.core.tracing import get_tracer

logger = structlog.get_logger()


class CostSyncService:
    def __init__(
        self,
        db: AsyncSession,
        token_provider: Optional[AzureTokenProvider] = None,
        fetcher: Optional[AzureCostFetcher] = None,
        chain: Optional[ChainInvoker] = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.chunk_timeout = self.settings.SYNC_CHUNK_TIMEOUT_SECONDS
        self.tokens = token_provider or AzureTokenProvider(db)
        self.fetcher = fetcher or AzureCostFetcher()
        self.chain = chain or ChainInvoker(db)
        self.progress = SyncProgressTracker(db)
        self.upserter = CostUpserter(db)

    async def start_historical_sync(
        self,
        tenant_id: UUID,
        start_date: date,
        end_date: Optional[date] = None,
        sync_type: str = SyncKind.HISTORICAL.value,
        today: Optional[date] = None,
    ) -> CostSyncJob:
        """
        Create a sync job and queue its first chunk. Returns as soon as the job exists.

        Raises InvalidRange, CredentialsNotFound or SyncAlreadyRunning synchronously;
        every later failure is recorded on the job instead.
        """
        today = today or datetime.now(timezone.utc).date()
        end_date = end_date or today
        chunks = plan_chunks(start_date, end_date)
        validate_history_window(start_date, today, self.settings.SYNC_MAX_HISTORY_MONTHS)

        await self.tokens.get_connection(tenant_id)

        active = await self.progress.find_active_job(tenant_id, sync_type)
        if active is not None:
            logger.info(
                "sync_already_running",
                tenant_id=str(tenant_id),
                sync_job_id=str(active.id),
                sync_type=sync_type,
            )
            raise SyncAlreadyRunning(details={"sync_job_id": str(active.id)})

        job = await self.progress.create_job(tenant_id, start_date, end_date, chunks, sync_type)
        try:
            await self.chain.schedule_chunk(job, 0, immediate=True)
        except Exception as e:
            # Nothing will ever pick the job up; close it so the tenant is not blocked
            await self.db.rollback()
            await self.db.refresh(job)
            await self.progress.fail_job(job, f"Could not queue first chunk: {type(e).__name__}: {e}")
            raise
        return job

    async def process_chunk(self, sync_job_id: UUID, chunk_index: int) -> Dict[str, Any]:
        """
        Process one chunk and hand off the next one.

        Redelivery is safe: a terminal job is a no-op, a terminal chunk only
        re-issues the hand-off, and a chunk found `running` was interrupted and
        is fetched again (upserts are idempotent).
        """
        job = await self.progress.get_job(sync_job_id, lock=True)
        if job is None:
            logger.warning("sync_job_missing", sync_job_id=str(sync_job_id))
            return {"status": "skipped", "reason": "sync_job_not_found"}

        structlog.contextvars.bind_contextvars(sync_job_id=str(job.id), tenant_id=str(job.tenant_id))

        if job.is_terminal:
            logger.info("sync_job_already_terminal", status=job.status)
            return {"status": "skipped", "reason": "job_terminal"}

        if chunk_index >= job.total_chunks or chunk_index < 0:
            raise ValueError(f"chunk_index {chunk_index} out of range for job with {job.total_chunks} chunks")

        state = job.chunk_details[chunk_index]
        records = 0
        if state["status"] in ("completed", "failed"):
            logger.info("sync_chunk_redelivered_terminal", chunk_index=chunk_index)
        else:
            records = await self._run_chunk(job, chunk_index)

        return await self._advance(job, chunk_index, records)

    async def _run_chunk(self, job: CostSyncJob, index: int) -> int:
        chunk = chunk_range(job, index)
        await self.progress.mark_chunk_running(job, index)

        tracer = get_tracer(__name__)
        started = time.perf_counter()
        with tracer.start_as_current_span("cost_sync_chunk") as span:
            span.set_attribute("sync_job_id", str(job.id))
            span.set_attribute("chunk_index", index)
            try:
                written = await self._fetch_within_deadline(job, chunk)
            except CostSyncException as e:
                # A timed out or failed upsert leaves the session mid-transaction
                await self.db.rollback()
                await self.db.refresh(job)
                await self.progress.record_chunk_failure(job, index, f"{e.code}: {e.message}")
                return 0
            except Exception as e:  # noqa: BLE001 - chunk-scoped isolation, job continues
                logger.error("sync_chunk_unexpected_error", chunk_index=index, error=str(e), exc_info=True)
                await self.db.rollback()
                await self.db.refresh(job)
                await self.progress.record_chunk_failure(job, index, f"{type(e).__name__}: {e}")
                return 0
            finally:
                SYNC_CHUNK_DURATION.observe(time.perf_counter() - started)

        await self.progress.record_chunk_success(job, index, written)
        await self._touch_connection(job.tenant_id)
        return written

    async def _fetch_within_deadline(self, job: CostSyncJob, chunk: ChunkRange) -> int:
        try:
            return await asyncio.wait_for(self._fetch_and_store(job, chunk), timeout=self.chunk_timeout)
        except asyncio.TimeoutError as e:
            raise ChunkTimedOut(
                f"Chunk {chunk.label} did not finish within {self.chunk_timeout:g}s",
                details={"chunk": chunk.label},
            ) from e

    async def _fetch_and_store(self, job: CostSyncJob, chunk: ChunkRange) -> int:
        access = await self.tokens.get_token(job.tenant_id)
        fetched = await self.fetcher.fetch_chunk(access.token, access.subscription_id, chunk)
        records = CostDeduplicator.deduplicate(fetched.rows, str(job.tenant_id))
        return await self.upserter.upsert(records)

    async def abandon_chunk(self, sync_job_id: UUID, chunk_index: int, reason: str) -> Optional[Dict[str, Any]]:
        """
        Give up on a chunk whose queue job ran out of attempts: mark it failed
        and move on, so the sync job still reaches a terminal state.
        """
        job = await self.progress.get_job(sync_job_id, lock=True)
        if job is None or job.is_terminal:
            return None
        if not 0 <= chunk_index < job.total_chunks:
            return None

        structlog.contextvars.bind_contextvars(sync_job_id=str(job.id), tenant_id=str(job.tenant_id))
        logger.error("sync_chunk_abandoned", chunk_index=chunk_index, reason=reason[:500])
        await self.progress.record_chunk_failure(job, chunk_index, f"dead_letter: {reason}")
        return await self._advance(job, chunk_index, 0)

    async def _advance(self, job: CostSyncJob, index: int, records: int) -> Dict[str, Any]:
        next_index = next_chunk_index(job)
        if next_index is not None:
            await self.chain.schedule_chunk(job, next_index)
        else:
            await self.progress.finalize_if_done(job)

        return {
            "status": job.status,
            "chunk_index": index,
            "records": records,
            "next_chunk_index": next_index,
        }

    async def _touch_connection(self, tenant_id: UUID) -> None:
        result = await self.db.execute(select(AzureConnection).where(AzureConnection.tenant_id == tenant_id))
        connection = result.scalar_one_or_none()
        if connection is not None:
            connection.last_synced_at = datetime.now(timezone.utc)
            connection.error_message = None
            await self.db.commit()

    async def enqueue_incremental_syncs(self, today: Optional[date] = None) -> Dict[str, int]:
        """Start a short rolling sync for every enabled tenant with an active connection."""
        today = today or datetime.now(timezone.utc).date()
        start = today - timedelta(days=self.settings.INCREMENTAL_SYNC_DAYS)

        result = await self.db.execute(
            select(Tenant.id)
            .join(AzureConnection, AzureConnection.tenant_id == Tenant.id)
            .where(Tenant.is_enabled.is_(True), AzureConnection.is_active.is_(True))
        )
        tenant_ids = list(result.scalars().all())

        started = skipped = failed = 0
        for tenant_id in tenant_ids:
            try:
                await self.start_historical_sync(
                    tenant_id, start, today, sync_type=SyncKind.INCREMENTAL.value, today=today
                )
                started += 1
            except (SyncAlreadyRunning, CredentialsNotFound) as e:
                logger.info("incremental_sync_skipped", tenant_id=str(tenant_id), reason=e.code)
                skipped += 1
            except CostSyncException as e:
                logger.error("incremental_sync_tenant_failed", tenant_id=str(tenant_id), code=e.code, error=e.message)
                failed += 1
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error("incremental_sync_tenant_failed", tenant_id=str(tenant_id), error=str(e))
                failed += 1

        logger.info(
            "incremental_sync_sweep_complete",
            tenants=len(tenant_ids),
            started=started,
            skipped=skipped,
            failed=failed,
        )
        return {"tenants": len(tenant_ids), "started": started, "skipped": skipped, "failed": failed}
