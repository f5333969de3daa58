"""
Cost Record Upserter

Idempotent storage of deduplicated cost rows. Re-ingesting a range replaces
amounts in place, so repeated or overlapping syncs never double-count.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID
import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costsync.models.cloud import CostRecord
from costsync.modules.ingestion.domain.normalizer import natural_key
from costsync.schemas.costs import CostRecordCandidate
from costsync.shared.core.config import get_settings
from costsync.shared.core.exceptions import StoreWriteError
from costsync.shared.core.ops_metrics import SYNC_RECORDS_UPSERTED

logger = structlog.get_logger()


class CostUpserter:
    def __init__(self, db: AsyncSession, batch_size: Optional[int] = None):
        self.db = db
        self.batch_size = batch_size or get_settings().UPSERT_BATCH_SIZE

    def _insert(self):
        # PostgreSQL in production, SQLite under test
        dialect = self.db.get_bind().dialect.name
        return sqlite_insert if dialect == "sqlite" else pg_insert

    async def upsert(self, records: Sequence[CostRecordCandidate]) -> int:
        """
        Write records in batches with INSERT .. ON CONFLICT DO UPDATE on the natural key.
        Returns the number of rows written. Any failure rolls back and raises StoreWriteError.
        """
        if not records:
            return 0

        insert = self._insert()
        now = datetime.now(timezone.utc)
        written = 0

        try:
            for i in range(0, len(records), self.batch_size):
                batch = records[i: i + self.batch_size]
                values: List[Dict[str, Any]] = [
                    {
                        "tenant_id": UUID(str(r.tenant_id)),
                        "natural_key": natural_key(r),
                        "external_resource_id": r.external_resource_id,
                        "resource_group": r.resource_group,
                        "category": r.category,
                        "sub_category": r.sub_category,
                        "meter": r.meter,
                        "cost_amount": r.cost_amount,
                        "currency": r.currency,
                        "usage_date": r.usage_date,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for r in batch
                ]

                stmt = insert(CostRecord).values(values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant_id", "natural_key"],
                    set_={
                        "cost_amount": stmt.excluded.cost_amount,
                        "currency": stmt.excluded.currency,
                        "resource_group": stmt.excluded.resource_group,
                        "updated_at": stmt.excluded.updated_at,
                    }
                )
                await self.db.execute(stmt)
                written += len(values)

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("cost_upsert_failed", error=str(e), written_before_failure=written)
            raise StoreWriteError(f"Failed to persist cost records: {type(e).__name__}") from e

        SYNC_RECORDS_UPSERTED.inc(written)
        logger.info("cost_upsert_success", records=written)
        return written
