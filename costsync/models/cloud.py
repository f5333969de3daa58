from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4
from sqlalchemy import String, Numeric, Date, DateTime, ForeignKey, Boolean, UniqueConstraint, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from costsync.shared.db.base import Base


class CostRecord(Base):
    """
    One day of cost for one (resource, meter) combination.

    Identity is the natural key (tenant, resource id, usage date, meter category,
    meter subcategory, meter). Any of the text parts may be NULL, so the key is
    stored as a digest in `natural_key` where NULLs compare equal on every dialect.
    """
    __tablename__ = "cost_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "natural_key", name="uix_cost_record_natural_key"),
        Index("ix_cost_records_tenant_usage_date", "tenant_id", "usage_date"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    natural_key: Mapped[str] = mapped_column(String(64), nullable=False)

    external_resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    resource_group: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    sub_category: Mapped[str | None] = mapped_column(String, nullable=True)
    meter: Mapped[str | None] = mapped_column(String, nullable=True)

    cost_amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )


class CloudResource(Base):
    """Inventory of Azure resources last seen in a tenant's subscription."""
    __tablename__ = "cloud_resources"
    __table_args__ = (
        UniqueConstraint("tenant_id", "azure_resource_id", name="uix_cloud_resource_tenant_resource"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    azure_resource_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_group: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
