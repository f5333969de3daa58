"""
Cost Sync Schemas - Normalization Layer
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any
from uuid import UUID
from pydantic import BaseModel, Field


class ChunkRange(BaseModel):
    """One API-legal slice (at most one calendar month) of a sync range."""
    index: int
    start: date
    end: date

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


class FetchResult(BaseModel):
    """Rows of one chunk, keyed by the column names Azure returned on the first page."""
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    pages: int = 0


class CostRecordCandidate(BaseModel):
    """Normalized cost row ready for upsert, identified by its natural key."""
    tenant_id: str
    external_resource_id: Optional[str] = None
    resource_group: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    meter: Optional[str] = None
    cost_amount: Decimal = Decimal("0")
    currency: str = "USD"
    usage_date: date


class HistoricalSyncRequest(BaseModel):
    tenant_id: UUID
    start_date: date
    end_date: Optional[date] = Field(None, description="Defaults to today")


class SyncAcceptedResponse(BaseModel):
    sync_job_id: str
    status: str
    total_chunks: int
    message: str


class ChunkStateResponse(BaseModel):
    index: int
    label: str
    status: str
    records: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class SyncJobResponse(BaseModel):
    """Progress record of a sync job, as polled by dashboards."""
    id: str
    tenant_id: str
    sync_type: str
    status: str
    start_date: date
    end_date: date
    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    records_synced: int
    processing_rate: Optional[float] = None
    estimated_completion_at: Optional[datetime] = None
    current_operation: Optional[str] = None
    current_resource_name: Optional[str] = None
    chunk_details: List[ChunkStateResponse] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CostSummaryResponse(BaseModel):
    total_cost: float
    currency: str = "USD"
    by_category: Dict[str, float] = Field(default_factory=dict)
    record_count: int


class DailyTrendPoint(BaseModel):
    date: date
    cost: float


class ResourceCostEntry(BaseModel):
    resource_id: str
    resource_group: Optional[str] = None
    cost: float


class InventoryRefreshResponse(BaseModel):
    discovered: int
    deactivated: int
