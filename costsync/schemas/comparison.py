"""
Period Comparison Schemas

Serialized with camelCase keys to match the dashboard contract.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ComparisonRequest(BaseModel):
    period1_start: date
    period1_end: date
    period2_start: date
    period2_end: date
    tenant_id: Optional[UUID] = None
    categories: Optional[List[str]] = None
    exclude_resource_groups: List[str] = Field(default_factory=list)


class DailyCostPoint(CamelModel):
    date: date
    cost: float
    normalized_day: int


class BreakdownRow(CamelModel):
    name: str
    period1_cost: float
    period2_cost: float
    variance: float
    percent_change: float
    is_new: bool
    is_removed: bool
    has_savings: bool
    savings_amount: float
    deleted_from_azure: Optional[bool] = None


class PeriodSummary(CamelModel):
    total_cost: float
    daily_costs: List[DailyCostPoint]
    daily_average: float
    days_in_period: int
    by_resource_group: List[BreakdownRow]
    by_category: List[BreakdownRow]
    by_resource: List[BreakdownRow]


class VarianceSummary(CamelModel):
    absolute_diff: float
    percent_change: float


class ExcludedCost(CamelModel):
    period1: float
    period2: float


class ComparisonResult(CamelModel):
    period1: PeriodSummary
    period2: PeriodSummary
    variance: VarianceSummary
    excluded_cost: ExcludedCost
