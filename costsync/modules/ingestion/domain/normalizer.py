"""
Cost Row Normalization and Deduplication

Azure returns one row per grouping combination per day, but the same
combination can appear more than once in a chunk (split across pages or
across currencies of the same meter). Rows are normalized and collapsed on
the natural key before they reach the store.
"""
import hashlib
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple
import structlog

from costsync.schemas.costs import CostRecordCandidate

logger = structlog.get_logger()

_ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_COMPACT_DATE = re.compile(r"^\d{8}$")
_FALLBACK_FORMATS = ("%m/%d/%Y", "%Y/%m/%d", "%d %b %Y", "%b %d, %Y")
MIN_PLAUSIBLE_YEAR = 1980

COST_COLUMNS = ("Cost", "PreTaxCost", "CostUSD")


def _parse_compact(value: str) -> Optional[date]:
    try:
        return date(int(value[:4]), int(value[4:6]), int(value[6:8]))
    except ValueError:
        return None


def normalize_usage_date(value: Any) -> Optional[date]:
    """
    Normalize Azure's UsageDate into a calendar date.

    Accepts 20260112 (number or string), "2026-01-12T00:00:00Z", "2026-01-12",
    and, as a last resort, other common date spellings whose year is plausible.
    Returns None when the value cannot be read as a real date.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    if isinstance(value, (int, float)):
        if float(value).is_integer():
            text = str(int(value))
            if _COMPACT_DATE.match(text):
                return _parse_compact(text)
        return None

    text = str(value).strip()
    if not text:
        return None
    if _COMPACT_DATE.match(text):
        return _parse_compact(text)

    prefix = _ISO_DATE_PREFIX.match(text)
    if prefix:
        try:
            return date.fromisoformat(prefix.group(1))
        except ValueError:
            return None

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _FALLBACK_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is not None and parsed.year > MIN_PLAUSIBLE_YEAR:
        return parsed.date()
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _amount(row: Dict[str, Any]) -> Decimal:
    for column in COST_COLUMNS:
        raw = row.get(column)
        if raw is None:
            continue
        try:
            return Decimal(str(raw))
        except InvalidOperation:
            return Decimal("0")
    return Decimal("0")


def natural_key_parts(candidate: CostRecordCandidate) -> Tuple[str, ...]:
    return (
        str(candidate.tenant_id),
        candidate.external_resource_id or "null",
        candidate.usage_date.isoformat(),
        candidate.category or "null",
        candidate.sub_category or "null",
        candidate.meter or "null",
    )


def natural_key(candidate: CostRecordCandidate) -> str:
    """Stable digest of the natural key; NULL parts hash identically."""
    return hashlib.sha256("|".join(natural_key_parts(candidate)).encode("utf-8")).hexdigest()


def to_candidate(row: Dict[str, Any], tenant_id: str) -> Optional[CostRecordCandidate]:
    usage_date = normalize_usage_date(row.get("UsageDate"))
    if usage_date is None:
        return None
    return CostRecordCandidate(
        tenant_id=str(tenant_id),
        external_resource_id=_text(row.get("ResourceId")),
        resource_group=_text(row.get("ResourceGroup")),
        category=_text(row.get("MeterCategory")),
        sub_category=_text(row.get("MeterSubcategory")),
        meter=_text(row.get("Meter")),
        cost_amount=_amount(row),
        currency=_text(row.get("Currency")) or "USD",
        usage_date=usage_date,
    )


class CostDeduplicator:
    """Collapses normalized rows sharing a natural key into one summed record."""

    @staticmethod
    def deduplicate(rows: Iterable[Dict[str, Any]], tenant_id: str) -> List[CostRecordCandidate]:
        merged: Dict[Tuple[str, ...], CostRecordCandidate] = {}
        dropped = 0

        for row in rows:
            candidate = to_candidate(row, tenant_id)
            if candidate is None:
                dropped += 1
                continue
            key = natural_key_parts(candidate)
            existing = merged.get(key)
            if existing is None:
                merged[key] = candidate
            else:
                existing.cost_amount += candidate.cost_amount
                if existing.resource_group is None:
                    existing.resource_group = candidate.resource_group

        if dropped:
            logger.warning("cost_rows_dropped_unparseable_date", tenant_id=str(tenant_id), dropped=dropped)

        return list(merged.values())
