"""
Azure Cost Management Fetcher

Pulls one chunk of daily ActualCost rows from the Cost Management Query API,
grouped by resource, resource group and meter. Pages are followed through
`nextLink`; the whole chunk is retried with linear backoff on HTTP 429.
"""
import asyncio
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional
import httpx
import structlog
import tenacity

from costsync.schemas.costs import ChunkRange, FetchResult
from costsync.shared.core.config import get_settings
from costsync.shared.core.exceptions import FetchFailed, RateLimited
from costsync.shared.core.ops_metrics import SYNC_RATE_LIMIT_RETRIES

logger = structlog.get_logger()

GROUPING_DIMENSIONS = ("ResourceId", "ResourceGroup", "MeterCategory", "MeterSubcategory", "Meter")


def build_query(start: date, end: date) -> Dict[str, Any]:
    """Query body for daily ActualCost over an inclusive custom range."""
    return {
        "type": "ActualCost",
        "timeframe": "Custom",
        "timePeriod": {
            "from": f"{start.isoformat()}T00:00:00Z",
            "to": f"{end.isoformat()}T23:59:59Z",
        },
        "dataset": {
            "granularity": "Daily",
            "aggregation": {
                "totalCost": {"name": "Cost", "function": "Sum"}
            },
            "grouping": [
                {"type": "Dimension", "name": name} for name in GROUPING_DIMENSIONS
            ],
        },
    }


class ColumnMapping:
    """Name -> position index built once from the first page's column list."""

    def __init__(self, columns: List[Dict[str, Any]]):
        self.names = [c.get("name") for c in columns]
        self._index = {name: i for i, name in enumerate(self.names)}

    def __len__(self) -> int:
        return len(self.names)

    def apply(self, row: List[Any]) -> Dict[str, Any]:
        return {name: row[i] if i < len(row) else None for name, i in self._index.items()}


class AzureCostFetcher:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        page_delay: Optional[float] = None,
        max_pages: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self._client = client
        self.base_url = settings.AZURE_MANAGEMENT_URL.rstrip("/")
        self.api_version = settings.AZURE_COST_API_VERSION
        self.timeout = settings.AZURE_HTTP_TIMEOUT_SECONDS
        self.page_delay = settings.SYNC_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.max_retries = settings.SYNC_RATE_LIMIT_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.SYNC_RATE_LIMIT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    def query_url(self, subscription_id: str) -> str:
        return (
            f"{self.base_url}/subscriptions/{subscription_id}"
            f"/providers/Microsoft.CostManagement/query?api-version={self.api_version}"
        )

    async def fetch_chunk(self, token: str, subscription_id: str, chunk: ChunkRange) -> FetchResult:
        """
        Fetch every page of a chunk.

        A 429 on any page restarts the chunk from its first page, waiting
        attempt * backoff_seconds, for at most `max_retries` retries. When
        retries run out the RateLimited error escapes to the caller.
        """
        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(RateLimited),
            stop=tenacity.stop_after_attempt(self.max_retries + 1),
            wait=tenacity.wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            before_sleep=self._log_rate_limited(chunk),
            sleep=asyncio.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._fetch_once(token, subscription_id, chunk)

    def _log_rate_limited(self, chunk: ChunkRange):
        def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
            SYNC_RATE_LIMIT_RETRIES.inc()
            logger.warning(
                "azure_cost_query_rate_limited",
                chunk=chunk.label,
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            )
        return _before_sleep

    async def _fetch_once(self, token: str, subscription_id: str, chunk: ChunkRange) -> FetchResult:
        mapping: Optional[ColumnMapping] = None
        rows: List[Dict[str, Any]] = []
        pages = 0

        async for page in self.iter_pages(token, subscription_id, chunk):
            pages += 1
            if mapping is None:
                mapping = ColumnMapping(page.get("columns") or [])
            rows.extend(mapping.apply(raw) for raw in page.get("rows") or [])

        logger.info(
            "azure_cost_chunk_fetched",
            chunk=chunk.label,
            pages=pages,
            rows=len(rows),
        )
        return FetchResult(columns=mapping.names if mapping else [], rows=rows, pages=pages)

    async def iter_pages(
        self, token: str, subscription_id: str, chunk: ChunkRange
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Lazily yield result pages for a chunk. Each call starts again from the first page.

        The same query body is re-posted to every `nextLink`, with a fixed delay
        between pages and a hard ceiling on the number of pages.
        """
        body = build_query(chunk.start, chunk.end)
        url: Optional[str] = self.query_url(subscription_id)
        pages = 0

        if self._client is not None:
            client = self._client
            owns_client = False
        else:
            client = httpx.AsyncClient(timeout=self.timeout)
            owns_client = True

        try:
            while url:
                if pages >= self.max_pages:
                    raise FetchFailed(
                        f"Azure cost query for {chunk.label} exceeded {self.max_pages} pages",
                        details={"chunk": chunk.label, "max_pages": self.max_pages},
                    )
                if pages:
                    await asyncio.sleep(self.page_delay)

                payload = await self._post(client, url, token, body)
                pages += 1
                # Azure wraps results in "properties"; accept a bare body too
                properties = payload.get("properties", payload)
                yield properties
                url = properties.get("nextLink")
        finally:
            if owns_client:
                await client.aclose()

    async def _post(self, client: httpx.AsyncClient, url: str, token: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise FetchFailed(f"Azure cost query transport error: {type(e).__name__}: {e}") from e

        if response.status_code == 429:
            raise RateLimited(details={"retry_after": response.headers.get("Retry-After")})
        if not response.is_success:
            raise FetchFailed(
                f"Azure cost query failed with HTTP {response.status_code}: {response.text[:500]}",
                details={"status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise FetchFailed("Azure cost query returned a non-JSON body") from e
