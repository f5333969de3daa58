from datetime import datetime, timezone
from uuid import UUID, uuid4
from sqlalchemy import String, Boolean, ForeignKey, DateTime, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from costsync.shared.db.base import Base
from costsync.shared.core.config import get_settings

settings = get_settings()
_encryption_key = settings.ENCRYPTION_KEY

if not _encryption_key:
    # Fail fast rather than store client secrets in plaintext
    raise RuntimeError("ENCRYPTION_KEY not set. Cannot start securely.")


class AzureConnection(Base):
    """
    A tenant's Service Principal for the Azure management plane.

    Security:
    - client_id/azure_tenant_id are public identifiers
    - client_secret is encrypted at rest (AES)
    """
    __tablename__ = "azure_connections"
    __table_args__ = (
        UniqueConstraint('tenant_id', name='uq_azure_connection_tenant'),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    azure_tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    subscription_id: Mapped[str] = mapped_column(String, nullable=False)

    client_secret: Mapped[str | None] = mapped_column(
        StringEncryptedType(String, _encryption_key, AesEngine, "pkcs5"),
        nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
