"""
Azure Resource Inventory

Keeps `cloud_resources` in step with what currently exists in a tenant's
subscription. Cost comparison uses it to flag spend on resources that have
since been deleted from Azure.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID
import re
import structlog
import tenacity
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.core.exceptions import AzureError, ServiceRequestError, ServiceResponseError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.azure_connection import AzureConnection
from costsync.models.cloud import CloudResource
from costsync.shared.adapters.azure_auth import AzureTokenProvider
from costsync.shared.core.exceptions import FetchFailed

logger = structlog.get_logger()

azure_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((ServiceRequestError, ServiceResponseError)),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    reraise=True,
)

_RESOURCE_GROUP_RE = re.compile(r"/resourceGroups/([^/]+)", re.IGNORECASE)


def resource_group_from_id(resource_id: str) -> Optional[str]:
    match = _RESOURCE_GROUP_RE.search(resource_id or "")
    return match.group(1) if match else None


class AzureInventoryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    @azure_retry
    async def list_resources(self, connection: AzureConnection) -> List[Dict[str, Any]]:
        credential = ClientSecretCredential(
            tenant_id=connection.azure_tenant_id,
            client_id=connection.client_id,
            client_secret=connection.client_secret
        )
        async with credential:
            async with ResourceManagementClient(credential, connection.subscription_id) as client:
                resources = []
                async for resource in client.resources.list():
                    resources.append({
                        "id": resource.id,
                        "name": resource.name,
                        "type": resource.type,
                        "location": resource.location,
                    })
                return resources

    async def refresh(self, tenant_id: UUID) -> Dict[str, int]:
        """
        Upsert every listed resource as active and deactivate the ones Azure no longer returns.
        Resource ids are stored lower-cased; Azure treats them case-insensitively.
        """
        connection = await AzureTokenProvider(self.db).get_connection(tenant_id)

        try:
            listed = await self.list_resources(connection)
        except AzureError as e:
            logger.error("azure_inventory_list_failed", tenant_id=str(tenant_id), error=str(e))
            raise FetchFailed(f"Azure resource listing failed: {e}") from e

        now = datetime.now(timezone.utc)
        existing_rows = await self.db.execute(
            select(CloudResource).where(CloudResource.tenant_id == tenant_id)
        )
        existing = {r.azure_resource_id: r for r in existing_rows.scalars().all()}

        seen = set()
        for item in listed:
            resource_id = (item["id"] or "").lower()
            if not resource_id or resource_id in seen:
                continue
            seen.add(resource_id)
            row = existing.get(resource_id)
            if row is None:
                row = CloudResource(tenant_id=tenant_id, azure_resource_id=resource_id)
                self.db.add(row)
            row.name = item.get("name")
            row.resource_type = item.get("type")
            row.location = item.get("location")
            row.resource_group = resource_group_from_id(item["id"])
            row.is_active = True
            row.last_seen_at = now

        stale_ids = [rid for rid, row in existing.items() if rid not in seen and row.is_active]
        if stale_ids:
            await self.db.execute(
                update(CloudResource)
                .where(CloudResource.tenant_id == tenant_id, CloudResource.azure_resource_id.in_(stale_ids))
                .values(is_active=False)
            )

        await self.db.commit()
        logger.info(
            "azure_inventory_refreshed",
            tenant_id=str(tenant_id),
            discovered=len(seen),
            deactivated=len(stale_ids),
        )
        return {"discovered": len(seen), "deactivated": len(stale_ids)}
