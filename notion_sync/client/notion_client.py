"""
Notion HTTP Client - Resilient Async Client

Features:
- Async HTTP with connection pooling
- Concurrency limit derived from host resources (adaptive semaphore)
- Error classification with per-kind retry and backoff
- Fallback strategies for failing database queries
- Mode-aware two-tier response cache
- Request merging for concurrent identical requests
- Circuit breaker for resilience
- Prometheus metrics
"""

import asyncio
import json
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable
from urllib.parse import urlparse

import httpx
from rich.console import Console

from notion_sync.cache import CachePolicy, TieredCache
from notion_sync.client.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from notion_sync.client.concurrency import AdaptiveConcurrency
from notion_sync.client.errors import classify_error
from notion_sync.client.fallback import (
    CONSERVATIVE_PAGE_SIZE,
    PAGINATED_MAX_PAGES,
    PAGINATED_PAGE_DELAY,
    PAGINATED_PAGE_SIZE,
    THROTTLE_DELAY,
    THROTTLED_CONCURRENCY,
    select_fallback_strategy,
    simplify_filter,
)
from notion_sync.client.merger import RequestMerger
from notion_sync.client.retry import retry_with_backoff
from notion_sync.config import settings
from notion_sync.exceptions import ApiRequestError
from notion_sync.metrics import metrics
from notion_sync.models import ApiResult, Block, ErrorKind, FallbackStrategy

console = Console()
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Block types whose children are separate pages/databases or cannot be read
SKIPPED_BLOCK_TYPES = frozenset({"child_database", "child_page", "link_preview", "unsupported"})
BLOCK_BATCH_SIZE = 5
BLOCK_BATCH_DELAY = 0.2

VALID_FILTER_KEYS = frozenset(
    {
        "and", "or", "title", "rich_text", "number", "checkbox", "select",
        "multi_select", "status", "date", "people", "files", "url", "email",
        "phone_number", "relation", "created_by", "created_time",
        "last_edited_by", "last_edited_time", "formula", "unique_id", "rollup",
        "timestamp", "property",
    }
)

ISO_UTC_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?$")

SleepFunc = Callable[[float], Awaitable[None]]


def format_timestamp_for_api(timestamp: str | None) -> str:
    """
    Normalize a timestamp to the ISO 8601 UTC form the API accepts.

    Returns an empty string when the input is empty or cannot be parsed,
    which callers treat as "no timestamp filter".
    """
    if not timestamp or not timestamp.strip():
        return ""

    value = timestamp.strip()
    if ISO_UTC_PATTERN.match(value):
        return value.rstrip("Z") + "Z"

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not format timestamp for API: %s", timestamp)
        return ""

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_valid_filter(filter_: Any) -> bool:
    """A filter is valid when it has at least one known key with a non-empty value."""
    if not filter_ or not isinstance(filter_, dict):
        return False

    unknown = [key for key in filter_ if key not in VALID_FILTER_KEYS]
    if unknown:
        logger.warning("Filter contains unknown keys: %s", unknown)

    return any(key in VALID_FILTER_KEYS and value for key, value in filter_.items())


def build_incremental_filter(last_sync_time: str) -> dict[str, Any] | None:
    """Filter matching pages edited after the given time, or None without a usable time."""
    formatted = format_timestamp_for_api(last_sync_time)
    if not formatted:
        return None
    return {"timestamp": "last_edited_time", "last_edited_time": {"after": formatted}}


def _endpoint_label(endpoint: str) -> str:
    """Low-cardinality metrics label for an API path."""
    parts = endpoint.strip("/").split("/")
    if len(parts) >= 3 and parts[2] in ("query", "children"):
        return f"{parts[0]}/{parts[2]}"
    return parts[0] if parts else "unknown"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and body.get("message"):
        code = body.get("code")
        return f"{code}: {body['message']}" if code else str(body["message"])
    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code}"


@dataclass
class ClientStats:
    """Statistics for one client session."""

    http_requests: int = 0
    cache_hits: int = 0
    retries: int = 0
    fallbacks: int = 0
    errors: int = 0
    http_time: float = 0.0
    start_time: float = field(default_factory=time.time)

    def __str__(self) -> str:
        elapsed = time.time() - self.start_time
        return (
            f"HTTP Requests: {self.http_requests} | "
            f"Cache Hits: {self.cache_hits} | "
            f"Retries: {self.retries} | "
            f"Fallbacks: {self.fallbacks} | "
            f"Errors: {self.errors} | "
            f"HTTP Time: {self.http_time:.1f}s | "
            f"Total: {elapsed:.1f}s"
        )


class NotionClient:
    """
    Resilient async client for the Notion API.

    Usage:
        async with NotionClient(mode="incremental") as client:
            result = await client.query_database_incremental(db_id, last_sync)
            if result.ok:
                pages = result.results
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        mode: str | None = None,
        page_size: int | None = None,
        timeout: float | None = None,
        cache: TieredCache | None = None,
        merger: RequestMerger | None = None,
        concurrency: AdaptiveConcurrency | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc = asyncio.sleep,
        concurrent_enabled: bool = True,
    ) -> None:
        self.token = token if token is not None else settings.notion_api_token
        self.base_url = base_url or settings.notion_api_base_url
        self.mode = mode or settings.sync_mode
        self.page_size = page_size or settings.api_page_size
        self.use_api_filter = settings.use_api_filter
        self.block_max_depth = settings.block_fetch_max_depth
        self.block_node_budget = settings.block_fetch_node_budget
        self.block_time_budget = settings.block_fetch_time_budget

        self.cache = cache or TieredCache(enabled=settings.cache_enabled)
        self.merger = merger or RequestMerger()
        self.concurrency = concurrency or AdaptiveConcurrency(
            base=settings.concurrent_requests,
            ceiling=settings.max_concurrent_ceiling,
            enabled=settings.adaptive_concurrency_enabled,
        )
        self.concurrent_enabled = concurrent_enabled
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep

        self._semaphore: asyncio.Semaphore | None = None
        self._limit = 0
        self._client: httpx.AsyncClient | None = None

        self._breaker: CircuitBreaker | None = None
        if settings.circuit_breaker_enabled:
            self._breaker = CircuitBreaker(
                host=urlparse(self.base_url).netloc or "notion",
                config=CircuitBreakerConfig.from_settings(),
            )

        self.stats = ClientStats()

    async def __aenter__(self) -> "NotionClient":
        """Async context manager entry."""
        limit = self.concurrency.calculate()
        timeout = self._timeout
        if timeout is None:
            timeout = self.concurrency.timeout if self.concurrency.enabled else settings.request_timeout

        self._semaphore = asyncio.Semaphore(limit)
        self._limit = limit
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=limit * 2,
                max_keepalive_connections=limit,
            ),
            headers={
                "Authorization": f"Bearer {self.token}",
                "Notion-Version": settings.notion_api_version,
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": settings.user_agent,
            },
            transport=self._transport,
        )
        self.stats = ClientStats()
        logger.debug("Notion client ready (concurrency=%d, timeout=%.0fs)", limit, timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None
        self._semaphore = None

    @property
    def request_limit(self) -> int:
        """Requests allowed in flight at once."""
        return self._limit

    @asynccontextmanager
    async def _reduced_concurrency(self, limit: int) -> AsyncIterator[None]:
        """Let only `limit` requests in flight for the duration of the block."""
        previous = self._semaphore, self._limit
        self._semaphore, self._limit = asyncio.Semaphore(limit), limit
        try:
            yield
        finally:
            self._semaphore, self._limit = previous

    @property
    def circuit_status(self) -> dict[str, Any] | None:
        return self._breaker.get_status() if self._breaker is not None else None

    def set_sync_mode(self, mode: str) -> None:
        """Switch the mode used for cache admission."""
        self.mode = mode

    # ========== Transport ==========

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> ApiResult:
        """Perform one HTTP request and classify its outcome."""
        if not self._client or not self._semaphore:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        if self._breaker is None:
            return await self._send_once(method, endpoint, params, body)

        try:
            return await self._breaker.guard(
                lambda: self._send_once(method, endpoint, params, body)
            )
        except CircuitOpenError as e:
            self.stats.errors += 1
            metrics.record_api_error(ErrorKind.NETWORK_ERROR.value)
            return ApiResult.failure(
                ErrorKind.NETWORK_ERROR,
                str(e),
                context={"endpoint": endpoint, "method": method, "circuit_open": True},
            )

    async def _send_once(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None,
        body: dict[str, Any] | None,
    ) -> ApiResult:
        context = {"endpoint": endpoint, "method": method}

        async with self._semaphore:
            start = time.time()
            try:
                response = await self._client.request(
                    method, endpoint, params=params or None, json=body
                )
            except httpx.HTTPError as e:
                duration = time.time() - start
                kind = classify_error(e)
                self.stats.errors += 1
                metrics.record_api_error(kind.value)
                return ApiResult.failure(
                    kind,
                    str(e) or type(e).__name__,
                    duration=duration,
                    context=context,
                )

        duration = time.time() - start
        self.stats.http_requests += 1
        self.stats.http_time += duration
        self.concurrency.record_latency(duration)
        metrics.record_http_request(
            endpoint=_endpoint_label(endpoint),
            status=response.status_code,
            duration=duration,
        )

        if response.status_code >= 400:
            message = _error_message(response)
            kind = classify_error(status_code=response.status_code, message=message)
            self.stats.errors += 1
            metrics.record_api_error(kind.value)
            return ApiResult.failure(
                kind,
                message,
                status_code=response.status_code,
                duration=duration,
                context={**context, "response": response.text},
            )

        try:
            data = response.json()
        except ValueError:
            return ApiResult.failure(
                ErrorKind.UNKNOWN_ERROR,
                "Response is not valid JSON",
                status_code=response.status_code,
                duration=duration,
                context={**context, "response": response.text},
            )

        result = ApiResult.success(data, duration=duration)
        result.status_code = response.status_code
        return result

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        cache_policy: CachePolicy | None = None,
    ) -> ApiResult:
        """Cache lookup, request merging and retry around `_send`."""
        policy = cache_policy if cache_policy is not None else CachePolicy.for_endpoint(endpoint)
        cache_params = params if method == "GET" else body

        cached = await self.cache.get(endpoint, cache_params, policy, self.mode)
        if cached is not None:
            self.stats.cache_hits += 1
            result = ApiResult.success(cached)
            result.context = {"from_cache": True}
            return result

        key = " ".join(
            (
                method,
                endpoint,
                json.dumps(params or {}, sort_keys=True, default=str),
                json.dumps(body or {}, sort_keys=True, default=str),
            )
        )

        async def attempt() -> ApiResult:
            return await self._send(method, endpoint, params, body)

        async def with_retry() -> ApiResult:
            return await retry_with_backoff(
                attempt, sleep=self._sleep, operation=f"{method} {endpoint}"
            )

        result = await self.merger.run(key, with_retry)
        self.stats.retries += result.retry_count

        if result.ok:
            await self.cache.set(endpoint, cache_params, policy, self.mode, result.data)
        return result

    async def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        cache_policy: CachePolicy | None = None,
    ) -> ApiResult:
        """GET an endpoint relative to the API base URL."""
        return await self._request("GET", endpoint, params=params, cache_policy=cache_policy)

    async def post(self, endpoint: str, body: dict[str, Any] | None = None) -> ApiResult:
        """POST to an endpoint (database queries)."""
        return await self._request("POST", endpoint, body=body or {})

    async def _paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        page_delay: float = 0.0,
        grow: bool = True,
    ) -> tuple[list[dict[str, Any]], ApiResult | None, bool]:
        """
        Walk a cursor-paginated endpoint.

        Returns the collected items, the failing result (None if every page
        succeeded) and whether the listing was exhausted.
        """
        base = page_size or self.page_size
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        pages = 0

        while True:
            size = min(MAX_PAGE_SIZE, base)
            if grow and pages > 0:
                size = min(MAX_PAGE_SIZE, int(base * 1.5))

            if method == "GET":
                query = dict(params or {})
                query["page_size"] = size
                if cursor:
                    query["start_cursor"] = cursor
                result = await self.get(endpoint, query)
            else:
                payload = dict(body or {})
                payload["page_size"] = size
                if cursor:
                    payload["start_cursor"] = cursor
                result = await self.post(endpoint, payload)

            if not result.ok:
                return items, result, False

            data = result.data if isinstance(result.data, dict) else {}
            items.extend(data.get("results") or [])
            pages += 1

            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                return items, None, True
            if max_pages and pages >= max_pages:
                return items, None, False
            if page_delay > 0:
                await self._sleep(page_delay)

    async def get_paginated(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
        page_size: int | None = None,
        max_pages: int | None = None,
        page_delay: float = 0.0,
        body: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch every item of a paginated listing.

        Raises:
            ApiRequestError: If any page fails after retries
        """
        items, failed, _ = await self._paginate(
            endpoint,
            params=params,
            method=method,
            body=body,
            page_size=page_size,
            max_pages=max_pages,
            page_delay=page_delay,
        )
        if failed is not None:
            raise ApiRequestError(
                f"Paginated request to {endpoint} failed after {len(items)} items: "
                f"{failed.error_message}",
                failed,
            )
        return items

    async def _run_all(self, calls: list[Callable[[], Awaitable[ApiResult]]]) -> list[ApiResult]:
        """Run calls concurrently (bounded by the semaphore), or one by one."""
        if self.concurrent_enabled and len(calls) > 1:
            try:
                return list(await asyncio.gather(*(call() for call in calls)))
            except (httpx.HTTPError, OSError) as e:
                logger.warning("Concurrent requests failed (%s), retrying sequentially", e)
        return [await call() for call in calls]

    async def batch_get(self, endpoints: list[str]) -> list[ApiResult]:
        """GET several endpoints; results are in the same order as the input."""

        def call_for(endpoint: str) -> Callable[[], Awaitable[ApiResult]]:
            return lambda: self.get(endpoint)

        return await self._run_all([call_for(endpoint) for endpoint in endpoints])

    # ========== Databases ==========

    async def query_database(
        self,
        database_id: str,
        filter: dict[str, Any] | None = None,
        sorts: list[dict[str, Any]] | None = None,
        page_size: int | None = None,
    ) -> ApiResult:
        """Query every page of a database; data is the list of page objects."""
        start = time.time()
        body: dict[str, Any] = {}
        if filter and is_valid_filter(filter):
            body["filter"] = filter
        if sorts:
            body["sorts"] = sorts

        items, failed, _ = await self._paginate(
            f"databases/{database_id}/query",
            method="POST",
            body=body,
            page_size=page_size,
        )
        if failed is not None:
            failed.duration = time.time() - start
            return failed
        return ApiResult.success(items, duration=time.time() - start)

    async def query_database_incremental(
        self,
        database_id: str,
        last_sync_time: str = "",
        additional_filters: Iterable[dict[str, Any]] = (),
        sorts: list[dict[str, Any]] | None = None,
    ) -> ApiResult:
        """
        Query pages edited since `last_sync_time`, degrading gracefully.

        The timestamp condition and any additional filters are combined with
        `and`; an invalid combined filter is dropped (full listing). A query
        that still fails after retries goes through the fallback chosen for
        its error kind and the estimated database size.
        """
        start = time.time()
        filters: list[dict[str, Any]] = []
        if last_sync_time and self.use_api_filter:
            time_filter = build_incremental_filter(last_sync_time)
            if time_filter is not None:
                filters.append(time_filter)
        filters.extend(f for f in additional_filters if f)

        final_filter: dict[str, Any] | None = None
        if len(filters) == 1:
            final_filter = filters[0]
        elif len(filters) > 1:
            final_filter = {"and": filters}

        if final_filter is not None and not is_valid_filter(final_filter):
            logger.warning("Incremental filter for %s is invalid, querying everything", database_id)
            final_filter = None

        result = await self.query_database(database_id, final_filter, sorts)
        if result.ok:
            result.duration = time.time() - start
            result.context = {
                "database_id": database_id,
                "filter_used": final_filter is not None,
                "page_count": len(result.results),
            }
            return result

        logger.error(
            "Incremental query of %s failed: %s - %s",
            database_id,
            result.error_kind.value if result.error_kind else "?",
            result.error_message,
        )

        if result.error_kind == ErrorKind.AUTH_ERROR:
            estimated = 0
        else:
            estimated = await self.estimate_database_size(database_id)
        strategy = select_fallback_strategy(result.error_kind, estimated)
        return await self._execute_fallback(
            database_id, final_filter, sorts, strategy, result, estimated, start
        )

    async def _execute_fallback(
        self,
        database_id: str,
        filter_: dict[str, Any] | None,
        sorts: list[dict[str, Any]] | None,
        strategy: FallbackStrategy,
        original: ApiResult,
        estimated_size: int,
        started: float,
    ) -> ApiResult:
        """Run a fallback strategy after a failed query."""
        logger.info("Running fallback %s for database %s", strategy.value, database_id)
        self.stats.fallbacks += 1

        if strategy in (FallbackStrategy.ABORT_SYNC, FallbackStrategy.RETRY_WITH_BACKOFF):
            metrics.record_fallback(strategy.value, False)
            original.fallback_strategy = strategy
            original.duration = time.time() - started
            return original

        items: list[dict[str, Any]] = []
        complete = True
        failure: ApiResult | None = None

        if strategy == FallbackStrategy.FULL_SYNC:
            attempt = await self.query_database(database_id, None, sorts)
            items, failure = (attempt.results, None) if attempt.ok else ([], attempt)
        elif strategy == FallbackStrategy.SIMPLIFIED_FILTER:
            attempt = await self.query_database(database_id, simplify_filter(filter_), sorts)
            items, failure = (attempt.results, None) if attempt.ok else ([], attempt)
        elif strategy == FallbackStrategy.PAGINATED_SYNC:
            items, complete = await self._paginated_sync(
                database_id, simplify_filter(filter_), PAGINATED_PAGE_SIZE
            )
        elif strategy == FallbackStrategy.THROTTLED_SYNC:
            await self._sleep(THROTTLE_DELAY)
            async with self._reduced_concurrency(THROTTLED_CONCURRENCY):
                attempt = await self.query_database(database_id, filter_, sorts)
            if attempt.ok:
                items = attempt.results
            else:
                logger.warning("Throttled query failed, falling back to conservative sync")
                items, complete = await self._paginated_sync(
                    database_id, None, CONSERVATIVE_PAGE_SIZE
                )
        else:
            items, complete = await self._paginated_sync(
                database_id, None, CONSERVATIVE_PAGE_SIZE
            )

        duration = time.time() - started
        if failure is not None:
            metrics.record_fallback(strategy.value, False)
            return ApiResult.failure(
                original.error_kind or ErrorKind.UNKNOWN_ERROR,
                f"{original.error_message}; fallback {strategy.value} failed: "
                f"{failure.error_message}",
                status_code=original.status_code,
                retry_count=original.retry_count,
                duration=duration,
                fallback_strategy=strategy,
                context={
                    "database_id": database_id,
                    "original_error": original.error_message,
                    "fallback_error": failure.error_message,
                    "estimated_size": estimated_size,
                },
            )

        metrics.record_fallback(strategy.value, True)
        result = ApiResult.fallback_success(
            items,
            strategy,
            error_kind=original.error_kind,
            retry_count=max(original.retry_count, 1),
            duration=duration,
        )
        result.context = {
            "database_id": database_id,
            "original_error": original.error_message,
            "page_count": len(items),
            "partial": not complete,
        }
        console.print(
            f"[yellow]Fallback {strategy.value} for {database_id}: {len(items)} pages"
            f"{' (partial)' if not complete else ''}[/yellow]"
        )
        return result

    async def _paginated_sync(
        self,
        database_id: str,
        filter_: dict[str, Any] | None,
        page_size: int,
    ) -> tuple[list[dict[str, Any]], bool]:
        """Small fixed pages with a delay; stops at the first error keeping what it has."""
        body: dict[str, Any] = {}
        if filter_ and is_valid_filter(filter_):
            body["filter"] = filter_

        items, failed, exhausted = await self._paginate(
            f"databases/{database_id}/query",
            method="POST",
            body=body,
            page_size=page_size,
            max_pages=PAGINATED_MAX_PAGES,
            page_delay=PAGINATED_PAGE_DELAY,
            grow=False,
        )
        if failed is not None:
            logger.warning(
                "Paginated sync of %s stopped after %d items: %s",
                database_id,
                len(items),
                failed.error_message,
            )
        return items, exhausted

    async def estimate_database_size(self, database_id: str) -> int:
        """
        Rough page count from a one-item query.

        1000 when there is more than one page, 500 when that query fails,
        otherwise the number of results.
        """
        result = await self.post(f"databases/{database_id}/query", {"page_size": 1})
        if not result.ok:
            return 500
        data = result.data if isinstance(result.data, dict) else {}
        if data.get("has_more"):
            return 1000
        return len(data.get("results") or [])

    async def get_database(self, database_id: str) -> ApiResult:
        return await self.get(f"databases/{database_id}")

    # ========== Pages & Blocks ==========

    async def get_me(self) -> ApiResult:
        """The bot user the token belongs to (connection check)."""
        return await self.get("users/me")

    async def get_page(self, page_id: str) -> ApiResult:
        return await self.get(f"pages/{page_id}")

    async def batch_get_pages(self, page_ids: list[str]) -> list[ApiResult]:
        return await self.batch_get([f"pages/{page_id}" for page_id in page_ids])

    async def get_block_children(self, block_id: str) -> ApiResult:
        """All direct children of a block (or page); data is the list of block objects."""
        items, failed, _ = await self._paginate(f"blocks/{block_id}/children")
        if failed is not None:
            return failed
        return ApiResult.success(items)

    async def _fetch_children_batched(
        self, block_ids: list[str]
    ) -> dict[str, list[dict[str, Any]]]:
        """Fetch children for several blocks in small concurrent groups."""
        children: dict[str, list[dict[str, Any]]] = {}

        def call_for(block_id: str) -> Callable[[], Awaitable[ApiResult]]:
            return lambda: self.get_block_children(block_id)

        for index in range(0, len(block_ids), BLOCK_BATCH_SIZE):
            group = block_ids[index : index + BLOCK_BATCH_SIZE]
            results = await self._run_all([call_for(block_id) for block_id in group])

            for block_id, result in zip(group, results):
                if result.ok:
                    children[block_id] = result.results
                elif result.status_code == 404:
                    logger.debug("Block %s not found, skipping", block_id)
                else:
                    logger.warning(
                        "Could not fetch children of block %s: %s",
                        block_id,
                        result.error_message,
                    )

            if index + BLOCK_BATCH_SIZE < len(block_ids):
                await self._sleep(BLOCK_BATCH_DELAY)

        return children

    async def get_page_content(self, page_id: str, max_depth: int | None = None) -> list[Block]:
        """
        Fetch the block tree of a page breadth-first.

        Stops descending at `max_depth`, after the node budget is used up or
        when the time budget runs out; whatever was fetched so far is
        returned. Children of child pages/databases and unreadable block
        types are not fetched.

        Raises:
            ApiRequestError: If the page's own children cannot be fetched
        """
        depth_limit = max_depth if max_depth is not None else self.block_max_depth
        start = time.time()

        root = await self.get_block_children(page_id)
        if not root.ok:
            raise ApiRequestError(
                f"Could not fetch content of page {page_id}: {root.error_message}", root
            )

        fetched: dict[str, list[dict[str, Any]]] = {page_id: root.results}
        visited = {page_id}
        frontier = self._expandable(root.results, visited)
        depth = 1

        while frontier and depth < depth_limit:
            if time.time() - start > self.block_time_budget:
                logger.warning(
                    "Block fetch for %s hit the time budget after %d nodes",
                    page_id,
                    len(visited),
                )
                break

            remaining = self.block_node_budget - len(visited)
            if remaining <= 0:
                logger.warning("Block fetch for %s hit the node budget", page_id)
                break

            level = frontier[:remaining]
            visited.update(level)
            level_children = await self._fetch_children_batched(level)
            fetched.update(level_children)

            frontier = []
            for block_id in level:
                frontier.extend(self._expandable(level_children.get(block_id, []), visited))
            depth += 1

        return self._assemble(page_id, fetched)

    @staticmethod
    def _expandable(blocks: list[dict[str, Any]], visited: set[str]) -> list[str]:
        return [
            block["id"]
            for block in blocks
            if block.get("has_children")
            and block.get("id")
            and block.get("type") not in SKIPPED_BLOCK_TYPES
            and block["id"] not in visited
        ]

    @classmethod
    def _assemble(cls, parent_id: str, fetched: dict[str, list[dict[str, Any]]]) -> list[Block]:
        blocks = []
        for raw in fetched.get(parent_id, []):
            block_id = raw.get("id")
            children = cls._assemble(block_id, fetched) if block_id in fetched else []
            blocks.append(Block.from_api(raw, children))
        return blocks
