"""
Period Comparison Engine

Side-by-side cost variance between two date ranges, built only from stored
cost records. Daily series are aligned by day offset from each period's start
so periods of different calendar dates (or lengths) can be overlaid.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.cloud import CloudResource, CostRecord
from costsync.schemas.comparison import (
    BreakdownRow,
    ComparisonRequest,
    ComparisonResult,
    DailyCostPoint,
    ExcludedCost,
    PeriodSummary,
    VarianceSummary,
)
from costsync.shared.core.config import get_settings
from costsync.shared.core.exceptions import InvalidRange

logger = structlog.get_logger()

UNKNOWN = "Unknown"
ZERO = Decimal("0")


@dataclass
class CostRow:
    usage_date: date
    resource_group: Optional[str]
    category: Optional[str]
    resource_id: Optional[str]
    cost: Decimal


@dataclass
class PeriodAggregate:
    start: date
    end: date
    total: Decimal = ZERO
    excluded: Decimal = ZERO
    daily: Dict[date, Decimal] = field(default_factory=dict)
    by_resource_group: Dict[str, Decimal] = field(default_factory=dict)
    by_category: Dict[str, Decimal] = field(default_factory=dict)
    by_resource: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def days_in_period(self) -> int:
        return max(1, (self.end - self.start).days + 1)

    def normalized_day(self, day: date) -> int:
        return (day - self.start).days + 1


def percent_change(current: float, previous: float) -> float:
    """(current - previous) / previous * 100, with 100 for growth from zero and 0 for zero to zero."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def _add(bucket: Dict, key, amount: Decimal) -> None:
    bucket[key] = bucket.get(key, ZERO) + amount


def aggregate_period(
    rows: Iterable[CostRow], start: date, end: date, excluded_groups: Sequence[str] = ()
) -> PeriodAggregate:
    """
    Totals, daily series and breakdowns for one period.

    Rows whose resource group is in `excluded_groups` only count towards
    `excluded`; rows without a resource group are never excluded.
    """
    excluded_set = set(excluded_groups)
    agg = PeriodAggregate(start=start, end=end)

    for row in rows:
        if row.resource_group is not None and row.resource_group in excluded_set:
            agg.excluded += row.cost
            continue
        agg.total += row.cost
        _add(agg.daily, row.usage_date, row.cost)
        _add(agg.by_resource_group, row.resource_group or UNKNOWN, row.cost)
        _add(agg.by_category, row.category or UNKNOWN, row.cost)
        _add(agg.by_resource, row.resource_id or UNKNOWN, row.cost)

    return agg


def combine_breakdowns(
    period1: Dict[str, Decimal],
    period2: Dict[str, Decimal],
    limit: Optional[int] = None,
    inventory: Optional[Set[str]] = None,
) -> List[BreakdownRow]:
    """
    Join two per-name cost maps into variance rows sorted by period-1 cost, descending.

    With an `inventory` of live resource ids (lower-cased), rows are flagged
    `deletedFromAzure` when their id is no longer present.
    """
    rows: List[BreakdownRow] = []
    for name in set(period1) | set(period2):
        p1 = float(period1.get(name, ZERO))
        p2 = float(period2.get(name, ZERO))
        variance = p1 - p2
        is_new = p1 > 0 and p2 == 0
        is_removed = p1 == 0 and p2 > 0
        has_savings = not is_new and not is_removed and variance < 0

        if has_savings:
            savings = abs(variance)
        elif is_removed:
            savings = p2
        else:
            savings = 0.0

        deleted = None
        if inventory is not None:
            deleted = name != UNKNOWN and name.lower() not in inventory

        rows.append(BreakdownRow(
            name=name,
            period1_cost=p1,
            period2_cost=p2,
            variance=variance,
            percent_change=percent_change(p1, p2),
            is_new=is_new,
            is_removed=is_removed,
            has_savings=has_savings,
            savings_amount=savings,
            deleted_from_azure=deleted,
        ))

    rows.sort(key=lambda r: (-r.period1_cost, r.name))
    return rows[:limit] if limit else rows


def _period_summary(agg: PeriodAggregate, breakdowns: Dict[str, List[BreakdownRow]]) -> PeriodSummary:
    total = float(agg.total)
    return PeriodSummary(
        total_cost=total,
        daily_costs=[
            DailyCostPoint(date=day, cost=float(cost), normalized_day=agg.normalized_day(day))
            for day, cost in sorted(agg.daily.items())
        ],
        daily_average=total / agg.days_in_period,
        days_in_period=agg.days_in_period,
        by_resource_group=breakdowns["by_resource_group"],
        by_category=breakdowns["by_category"],
        by_resource=breakdowns["by_resource"],
    )


class CostComparisonEngine:
    def __init__(self, db: AsyncSession, page_size: Optional[int] = None, top_resources: Optional[int] = None):
        settings = get_settings()
        self.db = db
        self.page_size = page_size or settings.COMPARISON_PAGE_SIZE
        self.top_resources = top_resources or settings.COMPARISON_TOP_RESOURCES

    async def fetch_period_rows(
        self,
        start: date,
        end: date,
        tenant_id: Optional[UUID] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> List[CostRow]:
        """Read every matching cost record, one page at a time, until a short page."""
        stmt = (
            select(
                CostRecord.usage_date,
                CostRecord.resource_group,
                CostRecord.category,
                CostRecord.external_resource_id,
                CostRecord.cost_amount,
            )
            .where(CostRecord.usage_date >= start, CostRecord.usage_date <= end)
            .order_by(CostRecord.usage_date, CostRecord.id)
        )
        if tenant_id is not None:
            stmt = stmt.where(CostRecord.tenant_id == tenant_id)
        if categories:
            stmt = stmt.where(CostRecord.category.in_(list(categories)))

        rows: List[CostRow] = []
        offset = 0
        while True:
            result = await self.db.execute(stmt.limit(self.page_size).offset(offset))
            page = result.all()
            rows.extend(
                CostRow(
                    usage_date=r.usage_date,
                    resource_group=r.resource_group,
                    category=r.category,
                    resource_id=r.external_resource_id,
                    cost=Decimal(str(r.cost_amount)),
                )
                for r in page
            )
            if len(page) < self.page_size:
                break
            offset += self.page_size
        return rows

    async def active_resource_ids(self, tenant_id: Optional[UUID] = None) -> Optional[Set[str]]:
        """Lower-cased ids of resources Azure still reports; None when no inventory was ever taken."""
        stmt = select(CloudResource.azure_resource_id, CloudResource.is_active)
        if tenant_id is not None:
            stmt = stmt.where(CloudResource.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        rows = result.all()
        if not rows:
            return None
        return {r.azure_resource_id.lower() for r in rows if r.is_active}

    async def compare(self, request: ComparisonRequest) -> ComparisonResult:
        for label, start, end in (
            ("period1", request.period1_start, request.period1_end),
            ("period2", request.period2_start, request.period2_end),
        ):
            if end < start:
                raise InvalidRange(f"{label} end date is before its start date")

        tenant_id = request.tenant_id
        rows1 = await self.fetch_period_rows(request.period1_start, request.period1_end, tenant_id, request.categories)
        rows2 = await self.fetch_period_rows(request.period2_start, request.period2_end, tenant_id, request.categories)

        agg1 = aggregate_period(rows1, request.period1_start, request.period1_end, request.exclude_resource_groups)
        agg2 = aggregate_period(rows2, request.period2_start, request.period2_end, request.exclude_resource_groups)
        inventory = await self.active_resource_ids(tenant_id)

        # Both period blocks carry the same joined breakdown rows
        breakdowns = {
            "by_resource_group": combine_breakdowns(agg1.by_resource_group, agg2.by_resource_group),
            "by_category": combine_breakdowns(agg1.by_category, agg2.by_category),
            "by_resource": combine_breakdowns(
                agg1.by_resource, agg2.by_resource, limit=self.top_resources, inventory=inventory
            ),
        }

        total1 = float(agg1.total)
        total2 = float(agg2.total)
        logger.info(
            "cost_comparison_computed",
            tenant_id=str(tenant_id) if tenant_id else None,
            period1_rows=len(rows1),
            period2_rows=len(rows2),
            excluded_groups=len(request.exclude_resource_groups),
        )
        return ComparisonResult(
            period1=_period_summary(agg1, breakdowns),
            period2=_period_summary(agg2, breakdowns),
            variance=VarianceSummary(
                absolute_diff=total1 - total2,
                percent_change=percent_change(total1, total2),
            ),
            excluded_cost=ExcludedCost(period1=float(agg1.excluded), period2=float(agg2.excluded)),
        )
