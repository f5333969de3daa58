from datetime import date
from typing import List, Optional
from uuid import UUID
from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from costsync.models.cloud import CostRecord
from costsync.schemas.costs import CostSummaryResponse, DailyTrendPoint, ResourceCostEntry

logger = structlog.get_logger()

TOP_RESOURCES_LIMIT = 50


def _date_filters(tenant_id: UUID, start_date: Optional[date], end_date: Optional[date]) -> list:
    filters = [CostRecord.tenant_id == tenant_id]
    if start_date:
        filters.append(CostRecord.usage_date >= start_date)
    if end_date:
        filters.append(CostRecord.usage_date <= end_date)
    return filters


class CostAggregator:
    """Read-side views over synced cost records. Aggregation happens in SQL."""

    @staticmethod
    async def get_summary(
        db: AsyncSession,
        tenant_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> CostSummaryResponse:
        filters = _date_filters(tenant_id, start_date, end_date)

        totals = await db.execute(
            select(func.coalesce(func.sum(CostRecord.cost_amount), 0), func.count(CostRecord.id))
            .where(*filters)
        )
        total_cost, record_count = totals.one()

        by_category = await db.execute(
            select(CostRecord.category, func.sum(CostRecord.cost_amount))
            .where(*filters)
            .group_by(CostRecord.category)
        )

        currency_row = await db.execute(select(CostRecord.currency).where(*filters).limit(1))
        currency = currency_row.scalar_one_or_none() or "USD"

        return CostSummaryResponse(
            total_cost=float(total_cost or 0),
            currency=currency,
            by_category={(category or "Unknown"): float(amount or 0) for category, amount in by_category.all()},
            record_count=record_count or 0,
        )

    @staticmethod
    async def get_daily_trend(
        db: AsyncSession,
        tenant_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        resource_group: Optional[str] = None,
    ) -> List[DailyTrendPoint]:
        filters = _date_filters(tenant_id, start_date, end_date)
        if resource_group:
            filters.append(CostRecord.resource_group == resource_group)

        result = await db.execute(
            select(CostRecord.usage_date, func.sum(CostRecord.cost_amount))
            .where(*filters)
            .group_by(CostRecord.usage_date)
            .order_by(CostRecord.usage_date)
        )
        return [DailyTrendPoint(date=day, cost=float(cost or 0)) for day, cost in result.all()]

    @staticmethod
    async def get_top_resources(
        db: AsyncSession,
        tenant_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = TOP_RESOURCES_LIMIT,
    ) -> List[ResourceCostEntry]:
        filters = _date_filters(tenant_id, start_date, end_date)
        filters.append(CostRecord.external_resource_id.is_not(None))

        total = func.sum(CostRecord.cost_amount).label("total")
        result = await db.execute(
            select(CostRecord.external_resource_id, func.max(CostRecord.resource_group), total)
            .where(*filters)
            .group_by(CostRecord.external_resource_id)
            .order_by(desc(total))
            .limit(limit)
        )
        return [
            ResourceCostEntry(resource_id=resource_id, resource_group=group, cost=float(cost or 0))
            for resource_id, group, cost in result.all()
        ]
