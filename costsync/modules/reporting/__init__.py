from .domain.aggregator import CostAggregator
from .domain.comparison import CostComparisonEngine

__all__ = ["CostAggregator", "CostComparisonEngine"]
