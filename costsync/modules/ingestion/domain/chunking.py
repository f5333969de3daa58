"""
Chunk Planner

Azure Cost Management rejects custom ranges longer than a billing month,
so a sync range is cut at calendar month boundaries.
"""
import calendar
from datetime import date, timedelta
from typing import List

from costsync.schemas.costs import ChunkRange
from costsync.shared.core.exceptions import InvalidRange


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def plan_chunks(start: date, end: date) -> List[ChunkRange]:
    """
    Split the inclusive range [start, end] into one chunk per calendar month touched.

    The first chunk begins at `start`, the last ends at `end`; chunks are
    contiguous, non-overlapping and ordered.
    """
    if end < start:
        raise InvalidRange(
            f"End date {end.isoformat()} is before start date {start.isoformat()}",
            details={"start_date": start.isoformat(), "end_date": end.isoformat()},
        )

    chunks: List[ChunkRange] = []
    cursor = start
    while cursor <= end:
        chunk_end = min(month_end(cursor), end)
        chunks.append(ChunkRange(index=len(chunks), start=cursor, end=chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


def months_back(today: date, months: int) -> date:
    """The same day-of-month `months` calendar months before `today`, clamped to month end."""
    year, month = divmod(today.year * 12 + (today.month - 1) - months, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(today.day, last_day))


def validate_history_window(start: date, today: date, max_months: int) -> None:
    """Cost Management only retains a limited history; reject ranges that begin before it."""
    earliest = months_back(today, max_months)
    if start < earliest:
        raise InvalidRange(
            f"Start date cannot be more than {max_months} months in the past",
            details={"start_date": start.isoformat(), "earliest_allowed": earliest.isoformat()},
        )
