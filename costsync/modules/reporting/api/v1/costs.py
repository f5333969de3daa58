"""
Cost Reporting API

- POST /compare: two-period variance report
- GET  /summary, /trend, /by-resource: read views over synced records
"""
from datetime import date
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.modules.reporting.domain.aggregator import CostAggregator
from costsync.modules.reporting.domain.comparison import CostComparisonEngine
from costsync.schemas.comparison import ComparisonRequest, ComparisonResult
from costsync.schemas.costs import CostSummaryResponse, DailyTrendPoint, ResourceCostEntry
from costsync.shared.core.auth import require_admin_key
from costsync.shared.db.session import get_db

router = APIRouter(tags=["Cost Reporting"], dependencies=[Depends(require_admin_key)])


@router.post("/compare", response_model=ComparisonResult, response_model_by_alias=True)
async def compare_periods(
    request: ComparisonRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Compare two periods. Daily series are aligned by day offset, breakdowns
    flag new, removed and cheaper items, and excluded resource groups are
    reported separately.
    """
    return await CostComparisonEngine(db).compare(request)


@router.get("/summary", response_model=CostSummaryResponse)
async def get_cost_summary(
    tenant_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
):
    return await CostAggregator.get_summary(db, tenant_id, start_date, end_date)


@router.get("/trend", response_model=list[DailyTrendPoint])
async def get_cost_trend(
    tenant_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    resource_group: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    return await CostAggregator.get_daily_trend(db, tenant_id, start_date, end_date, resource_group)


@router.get("/by-resource", response_model=list[ResourceCostEntry])
async def get_costs_by_resource(
    tenant_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
):
    return await CostAggregator.get_top_resources(db, tenant_id, start_date, end_date)
