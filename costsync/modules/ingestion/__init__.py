from .domain.service import CostSyncService
from .domain.chunking import plan_chunks
from .domain.normalizer import CostDeduplicator
from .domain.persistence import CostUpserter

__all__ = ["CostSyncService", "plan_chunks", "CostDeduplicator", "CostUpserter"]
