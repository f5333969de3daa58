import os
# Test environment must be in place BEFORE any costsync imports (settings are cached)
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-0123456789abcdef"
os.environ.pop("ADMIN_API_KEY", None)
os.environ.pop("INTERNAL_JOB_SECRET", None)

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

# Register every table on the shared metadata
from costsync.shared.db.base import Base
from costsync.models.tenant import Tenant
from costsync.models.azure_connection import AzureConnection
from costsync.models.cloud import CostRecord, CloudResource
from costsync.models.sync_job import CostSyncJob
from costsync.models.background_job import BackgroundJob


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = AsyncSession(bind=engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest.fixture
async def tenant(db: AsyncSession) -> Tenant:
    t = Tenant(name="Contoso")
    db.add(t)
    await db.commit()
    return t


@pytest.fixture
async def connection(db: AsyncSession, tenant: Tenant) -> AzureConnection:
    conn = AzureConnection(
        tenant_id=tenant.id,
        azure_tenant_id="00000000-aaaa-bbbb-cccc-000000000001",
        client_id="client-app-id",
        subscription_id="sub-123",
        client_secret="super-secret-value",
        is_active=True,
    )
    db.add(conn)
    await db.commit()
    return conn


@pytest.fixture
async def ac(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """API client whose requests share the test's database session."""
    from costsync.main import app
    from costsync.shared.db.session import get_db

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
