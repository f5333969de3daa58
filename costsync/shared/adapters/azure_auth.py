"""
Azure Token Provider

Resolves a tenant's stored Service Principal and exchanges it for a
management-plane bearer token. Tokens are never cached across chunks:
each unit of work acquires its own.
"""
from dataclasses import dataclass
from uuid import UUID
import structlog
from azure.identity.aio import ClientSecretCredential
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError, ServiceResponseError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.azure_connection import AzureConnection
from costsync.shared.core.exceptions import AuthFailed, CredentialsNotFound

logger = structlog.get_logger()

MANAGEMENT_SCOPE = "https://management.azure.com/.default"


@dataclass
class AccessToken:
    token: str
    subscription_id: str
    expires_on: int


class AzureTokenProvider:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_connection(self, tenant_id: UUID) -> AzureConnection:
        """Load the tenant's active connection; the caller's own identity is never used."""
        result = await self.db.execute(
            select(AzureConnection).where(
                AzureConnection.tenant_id == tenant_id,
                AzureConnection.is_active.is_(True)
            )
        )
        connection = result.scalar_one_or_none()
        if not connection or not connection.client_secret:
            logger.warning("azure_credentials_not_found", tenant_id=str(tenant_id))
            raise CredentialsNotFound(details={"tenant_id": str(tenant_id)})
        return connection

    async def acquire_token(self, connection: AzureConnection) -> AccessToken:
        """Client-credentials exchange against Azure AD for the management scope."""
        credential = ClientSecretCredential(
            tenant_id=connection.azure_tenant_id,
            client_id=connection.client_id,
            client_secret=connection.client_secret
        )
        try:
            async with credential:
                token = await credential.get_token(MANAGEMENT_SCOPE)
        except ClientAuthenticationError as e:
            logger.error("azure_token_exchange_rejected", tenant_id=str(connection.tenant_id), error=str(e))
            raise AuthFailed(f"Azure AD rejected the client credentials: {e}") from e
        except (ServiceRequestError, ServiceResponseError) as e:
            logger.error("azure_token_exchange_unreachable", tenant_id=str(connection.tenant_id), error=str(e))
            raise AuthFailed(f"Azure AD token endpoint unreachable: {e}") from e

        return AccessToken(
            token=token.token,
            subscription_id=connection.subscription_id,
            expires_on=token.expires_on
        )

    async def get_token(self, tenant_id: UUID) -> AccessToken:
        connection = await self.get_connection(tenant_id)
        return await self.acquire_token(connection)
