"""
Cost Sync API

- POST /historical-sync: start a chunked historical sync (202, returns immediately)
- GET  /sync-jobs, /sync-jobs/active, /sync-jobs/{id}: progress polling
- POST /inventory/refresh: refresh the Azure resource inventory
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from costsync.models.sync_job import CostSyncJob
from costsync.modules.ingestion.domain.progress import SyncProgressTracker
from costsync.modules.ingestion.domain.service import CostSyncService
from costsync.schemas.costs import (
    ChunkStateResponse,
    HistoricalSyncRequest,
    InventoryRefreshResponse,
    SyncAcceptedResponse,
    SyncJobResponse,
)
from costsync.shared.adapters.azure_inventory import AzureInventoryService
from costsync.shared.core.auth import require_admin_key
from costsync.shared.core.exceptions import ResourceNotFoundError
from costsync.shared.db.session import get_db

router = APIRouter(tags=["Cost Sync"], dependencies=[Depends(require_admin_key)])
logger = structlog.get_logger()


def _to_response(job: CostSyncJob) -> SyncJobResponse:
    return SyncJobResponse(
        id=str(job.id),
        tenant_id=str(job.tenant_id),
        sync_type=job.sync_type,
        status=job.status,
        start_date=job.start_date,
        end_date=job.end_date,
        total_chunks=job.total_chunks,
        completed_chunks=job.completed_chunks,
        failed_chunks=job.failed_chunks,
        records_synced=job.records_synced,
        processing_rate=job.processing_rate,
        estimated_completion_at=job.estimated_completion_at,
        current_operation=job.current_operation,
        current_resource_name=job.current_resource_name,
        chunk_details=[ChunkStateResponse(**state) for state in job.chunk_details or []],
        error_message=job.error_message,
        started_at=job.started_at,
        completed_at=job.completed_at,
        created_at=job.created_at,
    )


@router.post("/historical-sync", response_model=SyncAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_historical_sync(
    request: HistoricalSyncRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Start a historical cost sync. The range is split into monthly chunks which
    are processed one at a time by the background job queue.
    """
    service = CostSyncService(db)
    job = await service.start_historical_sync(request.tenant_id, request.start_date, request.end_date)

    logger.info("historical_sync_accepted", sync_job_id=str(job.id), tenant_id=str(request.tenant_id))
    return SyncAcceptedResponse(
        sync_job_id=str(job.id),
        status=job.status,
        total_chunks=job.total_chunks,
        message=f"Historical sync started: {job.total_chunks} chunk(s) queued",
    )


@router.get("/sync-jobs", response_model=list[SyncJobResponse])
async def list_sync_jobs(
    tenant_id: UUID,
    limit: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Most recent sync jobs for a tenant, newest first."""
    result = await db.execute(
        select(CostSyncJob)
        .where(CostSyncJob.tenant_id == tenant_id)
        .order_by(CostSyncJob.created_at.desc())
        .limit(limit)
    )
    return [_to_response(job) for job in result.scalars().all()]


@router.get("/sync-jobs/active", response_model=Optional[SyncJobResponse])
async def get_active_sync_job(
    tenant_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    job = await SyncProgressTracker(db).find_active_job(tenant_id)
    return _to_response(job) if job else None


@router.get("/sync-jobs/{sync_job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    sync_job_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    job = await SyncProgressTracker(db).get_job(sync_job_id)
    if job is None:
        raise ResourceNotFoundError(f"Sync job {sync_job_id} not found")
    return _to_response(job)


@router.post("/inventory/refresh", response_model=InventoryRefreshResponse)
async def refresh_inventory(
    tenant_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Re-list the tenant's Azure resources so cost comparison can flag deleted ones."""
    result = await AzureInventoryService(db).refresh(tenant_id)
    return InventoryRefreshResponse(**result)
