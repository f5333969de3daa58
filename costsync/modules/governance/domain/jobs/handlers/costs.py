"""
Cost Sync Job Handlers
"""
from typing import Dict, Any
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from costsync.models.background_job import BackgroundJob
from costsync.modules.governance.domain.jobs.handlers.base import BaseJobHandler


class CostSyncChunkHandler(BaseJobHandler):
    """Processes a single chunk of a chunked cost sync and chains the next one."""

    # Must exceed SYNC_CHUNK_TIMEOUT_SECONDS so the chunk records its own timeout
    timeout_seconds = 600

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        from costsync.modules.ingestion.domain.service import CostSyncService

        payload = job.payload or {}
        if "sync_job_id" not in payload:
            raise ValueError("sync_job_id required for cost_sync_chunk")

        service = CostSyncService(db)
        return await service.process_chunk(
            UUID(payload["sync_job_id"]),
            int(payload.get("chunk_index", 0)),
        )

    async def on_dead_letter(self, job: BackgroundJob, db: AsyncSession) -> None:
        from costsync.modules.ingestion.domain.service import CostSyncService

        payload = job.payload or {}
        if "sync_job_id" not in payload:
            return
        await CostSyncService(db).abandon_chunk(
            UUID(payload["sync_job_id"]),
            int(payload.get("chunk_index", 0)),
            job.error_message or "Chunk job exhausted its attempts",
        )


class ResourceInventoryHandler(BaseJobHandler):
    """Refreshes the tenant's Azure resource inventory."""

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        from costsync.shared.adapters.azure_inventory import AzureInventoryService

        if not job.tenant_id:
            raise ValueError("tenant_id required for resource_inventory")
        return await AzureInventoryService(db).refresh(job.tenant_id)
