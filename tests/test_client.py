"""
Tests for the Notion HTTP client against a mocked transport.
"""

import json
from typing import Any, Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from notion_sync.client.concurrency import AdaptiveConcurrency
from notion_sync.client.fallback import (
    CONSERVATIVE_PAGE_SIZE,
    PAGINATED_PAGE_DELAY,
    THROTTLE_DELAY,
)
from notion_sync.client.notion_client import (
    NotionClient,
    build_incremental_filter,
    format_timestamp_for_api,
    is_valid_filter,
)
from notion_sync.exceptions import ApiRequestError
from notion_sync.models import ErrorKind, FallbackStrategy, Outcome

BASE_URL = "https://api.test/v1/"


def page(page_id: str) -> dict[str, Any]:
    return {"object": "page", "id": page_id, "properties": {}, "last_edited_time": "2024-01-01T00:00:00.000Z"}


def listing(items: list[dict[str, Any]], next_cursor: str | None = None) -> dict[str, Any]:
    return {
        "object": "list",
        "results": items,
        "has_more": next_cursor is not None,
        "next_cursor": next_cursor,
    }


class Recorder:
    """MockTransport handler that records requests and delegates to a router."""

    def __init__(self, route: Callable[[httpx.Request, dict[str, Any]], httpx.Response]) -> None:
        self.route = route
        self.requests: list[httpx.Request] = []
        self.bodies: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append(request)
        self.bodies.append(body)
        return self.route(request, body)


def make_client(recorder: Recorder, mode: str = "incremental", **kwargs: Any) -> NotionClient:
    return NotionClient(
        token="secret",
        base_url=BASE_URL,
        mode=mode,
        transport=httpx.MockTransport(recorder),
        sleep=AsyncMock(),
        concurrency=AdaptiveConcurrency(base=2, enabled=False),
        **kwargs,
    )


class TestTimestampsAndFilters:
    """Tests for timestamp formatting and filter validation."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-01-01T10:00:00.000Z", "2024-01-01T10:00:00.000Z"),
            ("2024-01-01T10:00:00", "2024-01-01T10:00:00Z"),
            ("2024-01-01 10:00:00", "2024-01-01T10:00:00Z"),
            ("2024-01-01T12:00:00+02:00", "2024-01-01T10:00:00Z"),
            ("", ""),
            ("   ", ""),
            ("not a time", ""),
        ],
    )
    def test_format_timestamp_for_api(self, value: str, expected: str) -> None:
        assert format_timestamp_for_api(value) == expected

    def test_valid_filters(self) -> None:
        """A filter needs a known key with a non-empty value."""
        assert is_valid_filter({"property": "Status", "select": {"equals": "Done"}})
        assert not is_valid_filter({})
        assert not is_valid_filter(None)
        assert not is_valid_filter({"and": []})
        assert not is_valid_filter({"unknown": {"x": 1}})

    def test_incremental_filter(self) -> None:
        """The incremental filter targets last_edited_time."""
        assert build_incremental_filter("2024-01-01 10:00:00") == {
            "timestamp": "last_edited_time",
            "last_edited_time": {"after": "2024-01-01T10:00:00Z"},
        }
        assert build_incremental_filter("garbage") is None


class TestRequests:
    """Tests for single requests, retries and caching."""

    @pytest.mark.asyncio
    async def test_headers(self) -> None:
        """Requests carry the bearer token and API version."""
        recorder = Recorder(lambda request, body: httpx.Response(200, json={"object": "user"}))

        async with make_client(recorder) as client:
            result = await client.get_me()

        assert result.ok
        headers = recorder.requests[0].headers
        assert headers["Authorization"] == "Bearer secret"
        assert "Notion-Version" in headers

    @pytest.mark.asyncio
    async def test_requires_context_manager(self) -> None:
        """Using the client outside `async with` is an error."""
        client = make_client(Recorder(lambda request, body: httpx.Response(200, json={})))

        with pytest.raises(RuntimeError):
            await client.get_page("p1")

    @pytest.mark.asyncio
    async def test_network_errors_retried(self) -> None:
        """Transport errors are retried three times with backoff, then fail."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        recorder = Recorder(route)
        client = make_client(recorder)

        async with client:
            result = await client.get_page("p1")

        assert result.outcome == Outcome.FAILURE
        assert result.error_kind == ErrorKind.NETWORK_ERROR
        assert result.retry_count == 3
        assert len(recorder.requests) == 4
        assert [call.args[0] for call in client._sleep.await_args_list] == [1, 3, 9]

    @pytest.mark.asyncio
    async def test_server_error_then_success(self) -> None:
        """A transient 503 succeeds on retry."""
        responses = iter(
            [
                httpx.Response(503, json={"code": "service_unavailable", "message": "down"}),
                httpx.Response(200, json=page("p1")),
            ]
        )
        recorder = Recorder(lambda request, body: next(responses))

        async with make_client(recorder) as client:
            result = await client.get_page("p1")

        assert result.ok
        assert result.retry_count == 1
        assert result.data["id"] == "p1"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        """A plain 404 fails immediately."""
        recorder = Recorder(
            lambda request, body: httpx.Response(
                404, json={"code": "object_not_found", "message": "Could not find page"}
            )
        )

        async with make_client(recorder) as client:
            result = await client.get_page("p1")

        assert result.error_kind == ErrorKind.CLIENT_ERROR
        assert result.status_code == 404
        assert "object_not_found" in result.error_message
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_pages_cached_in_full_mode(self) -> None:
        """Full mode serves a repeated page read from the session cache."""
        recorder = Recorder(lambda request, body: httpx.Response(200, json=page("p1")))

        async with make_client(recorder, mode="full") as client:
            await client.get_page("p1")
            second = await client.get_page("p1")

        assert second.context == {"from_cache": True}
        assert len(recorder.requests) == 1
        assert client.stats.cache_hits == 1

    @pytest.mark.asyncio
    async def test_pages_not_cached_in_incremental_mode(self) -> None:
        """Incremental mode always reads pages fresh."""
        recorder = Recorder(lambda request, body: httpx.Response(200, json=page("p1")))

        async with make_client(recorder, mode="incremental") as client:
            await client.get_page("p1")
            await client.get_page("p1")

        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_batch_get_pages_keeps_order(self) -> None:
        """Batch reads return results in input order."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            return httpx.Response(200, json=page(request.url.path.rsplit("/", 1)[-1]))

        async with make_client(Recorder(route)) as client:
            results = await client.batch_get_pages(["a", "b", "c"])

        assert [r.data["id"] for r in results] == ["a", "b", "c"]


class TestDatabaseQueries:
    """Tests for pagination, incremental queries and fallbacks."""

    @pytest.mark.asyncio
    async def test_pagination(self) -> None:
        """All pages are collected; later pages use a larger page size."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if body.get("start_cursor") == "c2":
                return httpx.Response(200, json=listing([page("p3")]))
            return httpx.Response(200, json=listing([page("p1"), page("p2")], "c2"))

        recorder = Recorder(route)

        async with make_client(recorder, page_size=10) as client:
            result = await client.query_database("db-1")

        assert [p["id"] for p in result.results] == ["p1", "p2", "p3"]
        assert recorder.bodies[0]["page_size"] == 10
        assert recorder.bodies[1] == {"page_size": 15, "start_cursor": "c2"}

    @pytest.mark.asyncio
    async def test_get_paginated_raises_on_failure(self) -> None:
        """Helper listing raises ApiRequestError when a page fails."""
        recorder = Recorder(
            lambda request, body: httpx.Response(400, json={"code": "bad", "message": "nope"})
        )

        async with make_client(recorder) as client:
            with pytest.raises(ApiRequestError):
                await client.get_paginated("users")

    @pytest.mark.asyncio
    async def test_incremental_filter_sent(self) -> None:
        """The time filter and extra filters are combined with `and`."""
        recorder = Recorder(lambda request, body: httpx.Response(200, json=listing([page("p1")])))
        status = {"property": "Status", "select": {"equals": "Done"}}

        async with make_client(recorder) as client:
            result = await client.query_database_incremental(
                "db-1", "2024-01-01T10:00:00.000Z", additional_filters=[status]
            )

        assert result.outcome == Outcome.SUCCESS
        assert result.context["filter_used"]
        assert recorder.bodies[0]["filter"] == {
            "and": [
                {
                    "timestamp": "last_edited_time",
                    "last_edited_time": {"after": "2024-01-01T10:00:00.000Z"},
                },
                status,
            ]
        }

    @pytest.mark.asyncio
    async def test_no_watermark_queries_everything(self) -> None:
        """Without a last sync time no filter is sent."""
        recorder = Recorder(lambda request, body: httpx.Response(200, json=listing([])))

        async with make_client(recorder) as client:
            result = await client.query_database_incremental("db-1", "")

        assert "filter" not in recorder.bodies[0]
        assert not result.context["filter_used"]

    @pytest.mark.asyncio
    async def test_filter_error_falls_back_to_full_sync(self) -> None:
        """A rejected filter on a small database degrades to an unfiltered listing."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if "filter" in body:
                return httpx.Response(
                    400,
                    json={
                        "code": "validation_error",
                        "message": "Filter validation failed for last_edited_time",
                    },
                )
            if body.get("page_size") == 1:
                return httpx.Response(200, json=listing([page("p1")]))
            return httpx.Response(200, json=listing([page("p1"), page("p2")]))

        recorder = Recorder(route)

        async with make_client(recorder) as client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")

        assert result.outcome == Outcome.FALLBACK_SUCCESS
        assert result.fallback_strategy == FallbackStrategy.FULL_SYNC
        assert result.error_kind == ErrorKind.FILTER_ERROR
        assert [p["id"] for p in result.results] == ["p1", "p2"]
        assert not result.context["partial"]
        # filtered attempt, its retry, the size estimate and the full listing
        assert len(recorder.requests) == 4

    @pytest.mark.asyncio
    async def test_filter_error_large_database_is_paginated(self) -> None:
        """Large databases degrade to a bounded paginated listing."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if "filter" in body:
                return httpx.Response(
                    400, json={"code": "validation_error", "message": "Filter validation failed"}
                )
            if body.get("page_size") == 1:
                return httpx.Response(200, json=listing([page("p1")], "more"))
            return httpx.Response(200, json=listing([page("p1"), page("p2")]))

        async with make_client(Recorder(route)) as client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")

        assert result.fallback_strategy == FallbackStrategy.PAGINATED_SYNC
        assert len(result.results) == 2

    @pytest.mark.asyncio
    async def test_filter_error_medium_database_simplifies_filter(self) -> None:
        """A medium database is queried again without the timestamp condition."""
        status = {"property": "Status", "select": {"equals": "Done"}}

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if "and" in body.get("filter", {}):
                return httpx.Response(
                    400, json={"code": "validation_error", "message": "Filter validation failed"}
                )
            if body.get("page_size") == 1:
                # A failed size estimate falls back to 500 pages
                return httpx.Response(404, json={"code": "object_not_found", "message": "gone"})
            return httpx.Response(200, json=listing([page("p1")]))

        recorder = Recorder(route)

        async with make_client(recorder) as client:
            result = await client.query_database_incremental(
                "db-1", "2024-01-01T00:00:00Z", additional_filters=[status]
            )

        assert result.outcome == Outcome.FALLBACK_SUCCESS
        assert result.fallback_strategy == FallbackStrategy.SIMPLIFIED_FILTER
        assert recorder.bodies[-1]["filter"] == status
        assert [p["id"] for p in result.results] == ["p1"]

    @pytest.mark.asyncio
    async def test_failed_fallback_reports_both_errors(self) -> None:
        """When the fallback listing fails too, the result is a failure naming both."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if "filter" in body:
                return httpx.Response(
                    400, json={"code": "validation_error", "message": "Filter validation failed"}
                )
            if body.get("page_size") == 1:
                return httpx.Response(200, json=listing([]))
            return httpx.Response(500, json={"code": "internal_server_error", "message": "oops"})

        async with make_client(Recorder(route)) as client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")

        assert result.outcome == Outcome.FAILURE
        assert result.error_kind == ErrorKind.FILTER_ERROR
        assert result.fallback_strategy == FallbackStrategy.FULL_SYNC
        assert "oops" in result.context["fallback_error"]
        assert "fallback FULL_SYNC failed" in result.error_message

    @pytest.mark.asyncio
    async def test_rate_limit_throttles_the_retry(self) -> None:
        """After rate limiting, the query is repeated once with one request in flight."""
        limits: list[int] = []
        rate_limited = {"remaining": 6}  # first attempt and five retries

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if body.get("page_size") == 1:
                return httpx.Response(200, json=listing([]))
            if rate_limited["remaining"]:
                rate_limited["remaining"] -= 1
                return httpx.Response(429, json={"code": "rate_limited", "message": "slow down"})
            limits.append(client.request_limit)
            return httpx.Response(200, json=listing([page("p1")]))

        recorder = Recorder(route)
        client = make_client(recorder)

        async with client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")
            limit_after = client.request_limit

        assert result.fallback_strategy == FallbackStrategy.THROTTLED_SYNC
        assert [p["id"] for p in result.results] == ["p1"]
        assert limits == [1]
        assert limit_after == 2
        assert client._sleep.await_args_list[-1].args[0] == THROTTLE_DELAY
        # Same filter and page size as the original query
        assert recorder.bodies[-1]["filter"] == recorder.bodies[0]["filter"]
        assert recorder.bodies[-1]["page_size"] == recorder.bodies[0]["page_size"]

    @pytest.mark.asyncio
    async def test_server_errors_use_conservative_sync(self) -> None:
        """Other failures walk the database unfiltered in small delayed pages."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            if "filter" in body:
                return httpx.Response(502, json={"code": "bad_gateway", "message": "upstream"})
            if body.get("page_size") == 1:
                return httpx.Response(200, json=listing([page("p1")], "more"))
            if body.get("start_cursor") == "c2":
                return httpx.Response(200, json=listing([page("p2")]))
            return httpx.Response(200, json=listing([page("p1")], "c2"))

        recorder = Recorder(route)
        client = make_client(recorder)

        async with client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")

        assert result.fallback_strategy == FallbackStrategy.CONSERVATIVE_SYNC
        assert result.error_kind == ErrorKind.SERVER_ERROR
        assert [p["id"] for p in result.results] == ["p1", "p2"]
        assert not result.context["partial"]
        assert recorder.bodies[-2:] == [
            {"page_size": CONSERVATIVE_PAGE_SIZE},
            {"page_size": CONSERVATIVE_PAGE_SIZE, "start_cursor": "c2"},
        ]
        assert PAGINATED_PAGE_DELAY in [c.args[0] for c in client._sleep.await_args_list]

    @pytest.mark.asyncio
    async def test_auth_error_aborts(self) -> None:
        """Auth failures are not retried, skip the size estimate and abort."""
        recorder = Recorder(
            lambda request, body: httpx.Response(
                401, json={"code": "unauthorized", "message": "API token is invalid."}
            )
        )

        async with make_client(recorder) as client:
            result = await client.query_database_incremental("db-1", "2024-01-01T00:00:00Z")

        assert result.outcome == Outcome.FAILURE
        assert result.error_kind == ErrorKind.AUTH_ERROR
        assert result.fallback_strategy == FallbackStrategy.ABORT_SYNC
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_estimate_database_size(self) -> None:
        """The size estimate is 1000 when more pages exist and 500 when it fails."""
        responses = iter(
            [
                httpx.Response(200, json=listing([page("p1")], "more")),
                httpx.Response(200, json=listing([])),
                httpx.Response(404, json={"code": "object_not_found", "message": "gone"}),
            ]
        )

        async with make_client(Recorder(lambda request, body: next(responses))) as client:
            sizes = [await client.estimate_database_size("db-1") for _ in range(3)]

        assert sizes == [1000, 0, 500]


class TestPageContent:
    """Tests for block tree fetching."""

    @pytest.mark.asyncio
    async def test_block_tree(self) -> None:
        """Nested children are fetched; child pages are not descended into."""
        children = {
            "p1": [
                {"id": "b1", "type": "toggle", "has_children": True, "toggle": {}},
                {"id": "b2", "type": "child_page", "has_children": True, "child_page": {}},
            ],
            "b1": [{"id": "b3", "type": "paragraph", "has_children": False, "paragraph": {}}],
        }

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            block_id = request.url.path.split("/")[-2]
            return httpx.Response(200, json=listing(children.get(block_id, [])))

        recorder = Recorder(route)

        async with make_client(recorder) as client:
            blocks = await client.get_page_content("p1")

        assert [b.id for b in blocks] == ["b1", "b2"]
        assert blocks[0].children[0].id == "b3"
        assert blocks[1].children == []
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_depth_limit(self) -> None:
        """Descending stops at the depth limit."""

        def route(request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
            block_id = request.url.path.split("/")[-2]
            child = {"id": f"{block_id}-c", "type": "toggle", "has_children": True, "toggle": {}}
            return httpx.Response(200, json=listing([child]))

        async with make_client(Recorder(route)) as client:
            blocks = await client.get_page_content("p1", max_depth=2)

        assert blocks[0].id == "p1-c"
        assert blocks[0].children[0].id == "p1-c-c"
        assert blocks[0].children[0].children == []

    @pytest.mark.asyncio
    async def test_root_failure_raises(self) -> None:
        """A page whose children cannot be read raises."""
        recorder = Recorder(
            lambda request, body: httpx.Response(404, json={"code": "object_not_found", "message": "x"})
        )

        async with make_client(recorder) as client:
            with pytest.raises(ApiRequestError):
                await client.get_page_content("p1")
