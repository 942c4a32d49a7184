"""
Tests for the platform HTTP client.

Requests are served by an ``httpx.MockTransport`` so no network is used.
Error mapping is exercised through write calls, which are never retried.
"""

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from item_bridge.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from item_bridge.client.platform_client import PlatformClient
from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.config import PlatformInstanceConfig

BASE_URL = "https://platform.example.com/api"

# --- Fixtures ---


class PlatformHandler:
    """Routes mock requests to a tiny in-memory platform."""

    def __init__(self, items: list[dict] | None = None) -> None:
        self.items = items or []
        self.requests: list[httpx.Request] = []
        self.responses: dict[tuple[str, str], httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/")
        canned = self.responses.get((request.method, path))
        if canned is not None:
            return httpx.Response(
                canned.status_code, headers=canned.headers, content=canned.content
            )

        if request.method == "POST" and path.endswith("/filter/"):
            body = json.loads(request.content)
            matching = self.items
            for key, value in (body.get("filters") or {}).items():
                matching = [item for item in matching if item.get(key) == value]
            start = body["offset"]
            return httpx.Response(
                200,
                json={
                    "items": matching[start : start + body["limit"]],
                    "filtered": len(matching),
                    "total": len(self.items),
                },
            )
        if request.method == "GET" and path.startswith("item/"):
            item_id = int(path.split("/")[1])
            for item in self.items:
                if item["item_id"] == item_id:
                    return httpx.Response(200, json=item)
            return httpx.Response(404, json={"error": "not_found", "error_description": "Gone"})
        return httpx.Response(200, json={})

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.content]


@pytest.fixture
def handler() -> PlatformHandler:
    return PlatformHandler([{"item_id": n, "email": f"user{n}@example.com"} for n in range(1, 6)])


@pytest.fixture
def tracker() -> RateLimitTracker:
    return RateLimitTracker()


@pytest_asyncio.fixture
async def client(handler: PlatformHandler, tracker: RateLimitTracker):
    platform = PlatformClient(
        PlatformInstanceConfig(url=BASE_URL, token="secret-token"),
        rate_limit=0,
        tracker=tracker,
        transport=httpx.MockTransport(handler),
    )
    yield platform
    await platform.close()


def _error(status: int, headers: dict | None = None, **body) -> httpx.Response:
    return httpx.Response(status, json=body, headers=headers)


class TestReads:
    """Paging, counting and lookups."""

    @pytest.mark.asyncio
    async def test_stream_items_pages_until_filtered_count(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        pages = [page async for page in client.stream_items(1, batch_size=2)]

        assert [[item["item_id"] for item in page] for page in pages] == [[1, 2], [3, 4], [5]]
        assert [body["offset"] for body in handler.bodies()] == [0, 2, 4]
        assert handler.requests[0].url.path == "/api/item/app/1/filter/"

    @pytest.mark.asyncio
    async def test_stream_from_offset(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        pages = [page async for page in client.stream_items(1, batch_size=10, offset=3)]

        assert [item["item_id"] for item in pages[0]] == [4, 5]
        assert len(pages) == 1

    @pytest.mark.asyncio
    async def test_filter_limit_is_capped(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        await client.filter_items(1, limit=2000, filters={"email": "user2@example.com"})

        body = handler.bodies()[0]
        assert body == {"limit": 500, "offset": 0, "filters": {"email": "user2@example.com"}}

    @pytest.mark.asyncio
    async def test_count_items(self, client: PlatformClient) -> None:
        counts = await client.count_items(1, filters={"email": "user3@example.com"})

        assert counts == {"total": 5, "filtered": 1}

    @pytest.mark.asyncio
    async def test_fetch_items_by_ids_skips_missing(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        items = await client.fetch_items_by_ids([1, 0, 99, 3, -4])

        assert [item["item_id"] for item in items] == [1, 3]
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_find_item_by_field_value(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        found = await client.find_item_by_field_value(1, "email", "user4@example.com")
        missing = await client.find_item_by_field_value(1, "email", "nobody@example.com")
        empty = await client.find_item_by_field_value(1, "email", "")

        assert found["item_id"] == 4
        assert missing is None
        assert empty is None
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_authorization_header(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        await client.count_items(1)

        assert handler.requests[0].headers["Authorization"] == "OAuth2 secret-token"


class TestSchema:
    """App schema loading and caching."""

    @pytest.fixture(autouse=True)
    def app(self, handler: PlatformHandler) -> None:
        handler.responses[("GET", "app/7")] = httpx.Response(
            200,
            json={
                "app_id": 7,
                "fields": [
                    {
                        "field_id": 1,
                        "external_id": "email",
                        "type": "email",
                        "config": {"label": "E-mail"},
                    },
                    {
                        "field_id": 2,
                        "external_id": "old-notes",
                        "type": "text",
                        "status": "deleted",
                        "config": {"label": "Notes"},
                    },
                ],
            },
        )

    @pytest.mark.asyncio
    async def test_deleted_fields_are_excluded(self, client: PlatformClient) -> None:
        schema = await client.get_app_schema(7)

        assert schema == [
            {
                "field_id": 1,
                "external_id": "email",
                "type": "email",
                "label": "E-mail",
                "status": "active",
            }
        ]

    @pytest.mark.asyncio
    async def test_schema_is_cached_until_cleared(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        await client.get_app_schema(7)
        await client.get_app_schema(7)
        assert len(handler.requests) == 1

        client.clear_schema_cache(7)
        await client.get_app_schema(7)
        assert len(handler.requests) == 2


class TestWrites:
    """Item writes and error mapping."""

    @pytest.mark.asyncio
    async def test_create_item(self, client: PlatformClient, handler: PlatformHandler) -> None:
        handler.responses[("POST", "item/app/2/")] = httpx.Response(200, json={"item_id": 900})

        response = await client.create_item(
            2, {"email": "a@example.com"}, external_id="migrated-1", silent=True, hook=False
        )

        request = handler.requests[0]
        assert response == {"item_id": 900}
        assert request.url.params["silent"] == "true"
        assert request.url.params["hook"] == "false"
        assert json.loads(request.content) == {
            "fields": {"email": "a@example.com"},
            "external_id": "migrated-1",
        }

    @pytest.mark.asyncio
    async def test_update_and_delete(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        handler.responses[("DELETE", "item/5")] = httpx.Response(204)

        await client.update_item(5, {"name": "New"})
        assert await client.delete_item(5) is None

        assert [(r.method, r.url.path) for r in handler.requests] == [
            ("PUT", "/api/item/5"),
            ("DELETE", "/api/item/5"),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "exc_type"),
        [
            (401, AuthenticationError),
            (403, AuthorizationError),
            (404, NotFoundError),
            (409, ConflictError),
            (502, ServerError),
        ],
    )
    async def test_status_mapping(
        self, client: PlatformClient, handler: PlatformHandler, status: int, exc_type: type
    ) -> None:
        handler.responses[("PUT", "item/5")] = _error(status, error_description="nope")

        with pytest.raises(exc_type) as exc_info:
            await client.update_item(5, {"name": "x"})

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_error_body_fields(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        handler.responses[("POST", "item/app/2/")] = _error(
            400,
            error="invalid_value",
            error_detail="Value too long",
            error_description="Invalid value",
        )

        with pytest.raises(APIError) as exc_info:
            await client.create_item(2, {"name": "x" * 10})

        error = exc_info.value
        assert type(error) is APIError
        assert error.error_code == "invalid_value"
        assert error.error_detail == "Value too long"
        assert error.message == "Invalid value"
        assert str(error) == "[400] Invalid value (invalid_value): Value too long"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [420, 429])
    async def test_rate_limit_with_retry_after(
        self, client: PlatformClient, handler: PlatformHandler, status: int
    ) -> None:
        handler.responses[("POST", "item/app/2/")] = _error(
            status, headers={"Retry-After": "30"}, error_description="slow down"
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.create_item(2, {"name": "x"})

        assert exc_info.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_non_json_error_body(
        self, client: PlatformClient, handler: PlatformHandler
    ) -> None:
        handler.responses[("DELETE", "item/5")] = httpx.Response(500, text="Bad gateway")

        with pytest.raises(ServerError, match="Bad gateway"):
            await client.delete_item(5)


class TestQuotaTracking:
    """Rate-limit headers feed the shared tracker."""

    @pytest.mark.asyncio
    async def test_headers_update_tracker(
        self, client: PlatformClient, handler: PlatformHandler, tracker: RateLimitTracker
    ) -> None:
        reset = (datetime.now(UTC) + timedelta(minutes=30)).isoformat()
        handler.responses[("PUT", "item/5")] = httpx.Response(
            200,
            json={"revision": 2},
            headers={
                "x-rate-limit-limit": "5000",
                "x-rate-limit-remaining": "4990",
                "x-rate-limit-reset": reset,
            },
        )

        await client.update_item(5, {"name": "x"})

        assert tracker.limit() == 5000
        assert tracker.remaining_quota() == 4990

    @pytest.mark.asyncio
    async def test_missing_headers_leave_tracker_empty(
        self, client: PlatformClient, tracker: RateLimitTracker
    ) -> None:
        await client.update_item(5, {"name": "x"})

        assert not tracker.has_state()
