"""Platform client for reading and writing app items.

This client wraps the item filter, app schema, and item CRUD endpoints of a
single platform instance. The same class is used for the source and the
target side of a migration.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from item_bridge.client.base_client import BaseAPIClient
from item_bridge.client.exceptions import NotFoundError
from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.config import PlatformInstanceConfig
from item_bridge.utils.logging import get_logger
from item_bridge.utils.retry import retry_api_call, retry_api_call_short

logger = get_logger(__name__)

MAX_FILTER_LIMIT = 500


class PlatformClient(BaseAPIClient):
    """Client for one platform instance.

    Reads are wrapped with retry decorators. Writes are not: the batch
    processor owns write retries so that each failure can be classified.
    """

    def __init__(
        self,
        config: PlatformInstanceConfig,
        rate_limit: int = 10,
        tracker: RateLimitTracker | None = None,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        **kwargs: Any,
    ):
        """Initialize platform client.

        Args:
            config: Platform instance configuration
            rate_limit: Maximum requests per second
            tracker: Shared quota tracker
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            **kwargs: Passed through to BaseAPIClient (e.g. ``transport``)
        """
        super().__init__(
            base_url=config.url,
            token=config.token,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            rate_limit=rate_limit,
            tracker=tracker,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            **kwargs,
        )
        self._schema_cache: dict[int, list[dict[str, Any]]] = {}

    @retry_api_call
    async def filter_items(
        self,
        app_id: int,
        limit: int = MAX_FILTER_LIMIT,
        offset: int = 0,
        filters: dict[str, Any] | None = None,
        sort_by: str | None = None,
        sort_desc: bool | None = None,
    ) -> dict[str, Any]:
        """Fetch one page of items from an app.

        Args:
            app_id: App identifier
            limit: Page size (max 500)
            offset: Offset of the first item
            filters: Platform filter expression
            sort_by: Sort key
            sort_desc: Sort descending

        Returns:
            Dictionary with ``items``, ``filtered`` and ``total``
        """
        body: dict[str, Any] = {"limit": min(limit, MAX_FILTER_LIMIT), "offset": offset}
        if filters:
            body["filters"] = filters
        if sort_by is not None:
            body["sort_by"] = sort_by
        if sort_desc is not None:
            body["sort_desc"] = sort_desc

        response = await self.post(f"item/app/{app_id}/filter/", json_data=body)
        return {
            "items": response.get("items", []),
            "filtered": response.get("filtered", 0),
            "total": response.get("total", 0),
        }

    async def stream_items(
        self,
        app_id: int,
        batch_size: int = MAX_FILTER_LIMIT,
        offset: int = 0,
        filters: dict[str, Any] | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield consecutive pages of items, starting at ``offset``.

        Args:
            app_id: App identifier
            batch_size: Page size
            offset: Offset to start streaming from
            filters: Platform filter expression

        Yields:
            Lists of raw items, in source order
        """
        current = offset
        page = 0
        while True:
            response = await self.filter_items(
                app_id, limit=batch_size, offset=current, filters=filters
            )
            items = response["items"]
            if not items:
                break

            page += 1
            current += len(items)
            logger.debug(
                "items_page_fetched",
                app_id=app_id,
                page=page,
                items_this_page=len(items),
                offset=current,
                filtered=response["filtered"],
            )
            yield items

            if current >= response["filtered"]:
                break

        logger.info("items_stream_complete", app_id=app_id, pages=page, last_offset=current)

    async def count_items(
        self, app_id: int, filters: dict[str, Any] | None = None
    ) -> dict[str, int]:
        """Count items in an app.

        Returns:
            Dictionary with ``total`` (all items) and ``filtered`` (matching filters)
        """
        response = await self.filter_items(app_id, limit=1, offset=0, filters=filters)
        return {"total": response["total"], "filtered": response["filtered"]}

    @retry_api_call
    async def _fetch_app(self, app_id: int) -> dict[str, Any]:
        return await self.get(f"app/{app_id}")

    async def get_app_schema(self, app_id: int) -> list[dict[str, Any]]:
        """Return field descriptors for an app.

        Results are cached per client until ``clear_schema_cache`` is called.

        Args:
            app_id: App identifier

        Returns:
            List of ``{field_id, external_id, type, label, status}`` dictionaries
        """
        if app_id in self._schema_cache:
            return self._schema_cache[app_id]

        app = await self._fetch_app(app_id)
        fields = [
            {
                "field_id": field.get("field_id"),
                "external_id": field.get("external_id"),
                "type": field.get("type"),
                "label": (field.get("config") or {}).get("label") or field.get("label"),
                "status": field.get("status", "active"),
            }
            for field in app.get("fields", [])
            if field.get("status", "active") != "deleted"
        ]

        self._schema_cache[app_id] = fields
        logger.debug("app_schema_loaded", app_id=app_id, field_count=len(fields))
        return fields

    def clear_schema_cache(self, app_id: int | None = None) -> None:
        """Drop cached app schemas (all apps, or just ``app_id``)."""
        if app_id is None:
            self._schema_cache.clear()
        else:
            self._schema_cache.pop(app_id, None)
        logger.debug("app_schema_cache_cleared", app_id=app_id)

    @retry_api_call_short
    async def get_item(self, item_id: int) -> dict[str, Any]:
        """Fetch a single item."""
        return await self.get(f"item/{item_id}")

    async def fetch_items_by_ids(
        self, item_ids: list[int], concurrency: int = 5
    ) -> list[dict[str, Any]]:
        """Fetch many items by id with bounded concurrency.

        Non-positive ids are ignored and items that no longer exist are
        skipped. Results keep the order of ``item_ids``.

        Args:
            item_ids: Item identifiers
            concurrency: Maximum concurrent requests

        Returns:
            List of items that could be fetched
        """
        valid_ids = [item_id for item_id in item_ids if item_id > 0]
        if not valid_ids:
            return []

        semaphore = asyncio.Semaphore(concurrency)

        async def fetch_one(item_id: int) -> dict[str, Any] | None:
            async with semaphore:
                try:
                    return await self.get_item(item_id)
                except NotFoundError:
                    logger.warning("item_not_found", item_id=item_id)
                    return None

        results = await asyncio.gather(*(fetch_one(item_id) for item_id in valid_ids))
        items = [item for item in results if item is not None]

        logger.info(
            "items_fetched_by_id",
            requested=len(valid_ids),
            fetched=len(items),
            missing=len(valid_ids) - len(items),
        )
        return items

    async def find_item_by_field_value(
        self, app_id: int, external_id: str, value: Any
    ) -> dict[str, Any] | None:
        """Find the first item whose field ``external_id`` equals ``value``.

        Args:
            app_id: App identifier
            external_id: Field external id
            value: Raw value to filter on

        Returns:
            The first matching item, or None
        """
        if value is None or value == "":
            return None

        response = await self.filter_items(
            app_id, limit=1, offset=0, filters={external_id: value}
        )
        items = response["items"]
        if not items:
            return None

        if response["filtered"] > 1:
            logger.warning(
                "multiple_items_match_field_value",
                app_id=app_id,
                external_id=external_id,
                matches=response["filtered"],
            )
        return items[0]

    async def create_item(
        self,
        app_id: int,
        fields: dict[str, Any],
        external_id: str | None = None,
        silent: bool = False,
        hook: bool = True,
    ) -> dict[str, Any]:
        """Create an item.

        Args:
            app_id: Target app identifier
            fields: Field values keyed by external id
            external_id: Optional external id tag for the item
            silent: Suppress notifications and stream events
            hook: Trigger webhooks

        Returns:
            Response containing the new ``item_id``
        """
        body: dict[str, Any] = {"fields": fields}
        if external_id:
            body["external_id"] = external_id

        return await self.post(
            f"item/app/{app_id}/",
            json_data=body,
            params={"silent": str(silent).lower(), "hook": str(hook).lower()},
        )

    async def update_item(
        self,
        item_id: int,
        fields: dict[str, Any],
        silent: bool = False,
        hook: bool = True,
    ) -> dict[str, Any]:
        """Update the fields of an existing item."""
        return await self.put(
            f"item/{item_id}",
            json_data={"fields": fields},
            params={"silent": str(silent).lower(), "hook": str(hook).lower()},
        )

    async def delete_item(self, item_id: int) -> None:
        """Delete an item."""
        await self.delete(f"item/{item_id}")
        logger.debug("item_deleted", item_id=item_id)
