"""
Job Handlers Registry
"""
from typing import Dict, Type
from costsync.models.background_job import JobType
from costsync.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from costsync.modules.governance.domain.jobs.handlers.costs import CostSyncChunkHandler, ResourceInventoryHandler


# Maps JobType value to Handler Class
HANDLER_REGISTRY: Dict[str, Type[BaseJobHandler]] = {
    JobType.COST_SYNC_CHUNK.value: CostSyncChunkHandler,
    JobType.RESOURCE_INVENTORY.value: ResourceInventoryHandler,
}


def get_handler_factory(job_type: str) -> Type[BaseJobHandler]:
    """
    Get the handler class for a given job type.
    """
    handler_cls = HANDLER_REGISTRY.get(job_type)
    if not handler_cls:
        raise ValueError(f"No handler registered for job type: {job_type}")
    return handler_cls
