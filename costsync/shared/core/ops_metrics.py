"""
Operational Metrics for CostSync

Prometheus metrics for queue health and historical sync throughput.
"""

from prometheus_client import Counter, Histogram

# --- Queue Metrics ---
BACKGROUND_JOBS_ENQUEUED = Counter(
    "costsync_ops_jobs_enqueued_total",
    "Total number of background jobs enqueued",
    ["job_type"]
)

BACKGROUND_JOBS_DEAD_LETTERED = Counter(
    "costsync_ops_jobs_dead_lettered_total",
    "Total number of background jobs moved to dead letter after max attempts",
    ["job_type"]
)

# --- Sync Metrics ---
SYNC_CHUNKS_PROCESSED = Counter(
    "costsync_sync_chunks_processed_total",
    "Historical sync chunks reaching a terminal state",
    ["status"]  # 'completed', 'failed'
)

SYNC_RECORDS_UPSERTED = Counter(
    "costsync_sync_records_upserted_total",
    "Cost records written by the upserter"
)

SYNC_RATE_LIMIT_RETRIES = Counter(
    "costsync_sync_rate_limit_retries_total",
    "Whole-chunk retries triggered by HTTP 429 from Azure Cost Management"
)

SYNC_CHUNK_DURATION = Histogram(
    "costsync_sync_chunk_duration_seconds",
    "Wall-clock duration of a single chunk (token, fetch, dedupe, upsert)",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600)
)
