"""
In-memory stand-in for a platform instance.

``FakePlatform`` implements the subset of ``PlatformClient`` used by the
migration engine. Apps are plain lists of item dictionaries shaped like the
platform's filter responses; writes are recorded so tests can assert on
exactly what reached the target.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from item_bridge.client.exceptions import NotFoundError
from item_bridge.migration.field_mapping import extract_match_value
from item_bridge.migration.normalizer import normalize_match_value

_PLATFORM_FILTER_KEYS = frozenset({"created_on", "last_event_on", "tags"})


def schema_field(
    field_id: int, external_id: str, type: str = "text", label: str | None = None
) -> dict[str, Any]:
    """Build an app schema field descriptor."""
    return {
        "field_id": field_id,
        "external_id": external_id,
        "type": type,
        "label": label or external_id.replace("-", " ").title(),
        "status": "active",
    }


def make_item(item_id: int, **fields: Any) -> dict[str, Any]:
    """Build an item whose fields are all text fields.

    Keyword names are used as external ids (underscores become dashes);
    ``None`` values produce a field without values.
    """
    return {
        "item_id": item_id,
        "fields": [
            {
                "external_id": name.replace("_", "-"),
                "type": "text",
                "values": [] if value is None else [{"value": value}],
            }
            for name, value in fields.items()
        ],
    }


def contact_schema() -> list[dict[str, Any]]:
    return [schema_field(101, "email"), schema_field(102, "name")]


class FakePlatform:
    """Platform double with recorded writes and injectable failures.

    Attributes:
        apps: App id -> list of items
        schemas: App id -> schema field descriptors
        created: ``{"app_id", "item_id", "fields", "external_id"}`` per create
        updated: ``{"item_id", "fields"}`` per update
        deleted: Deleted item ids
        on_create: Called with ``(app_id, fields)`` before a create; may raise
        on_update: Called with ``(item_id, fields)`` before an update; may raise
        on_delete: Called with ``item_id`` before a delete; may raise
        stream_error: Raised by ``stream_items`` before the first page
    """

    def __init__(self, name: str = "platform", first_item_id: int = 90001):
        self.name = name
        self.apps: dict[int, list[dict[str, Any]]] = {}
        self.schemas: dict[int, list[dict[str, Any]]] = {}
        self.created: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []
        self.deleted: list[int] = []
        self.schema_fetches = 0
        self.schema_cache_clears = 0
        self.on_create: Callable[[int, dict[str, Any]], None] | None = None
        self.on_update: Callable[[int, dict[str, Any]], None] | None = None
        self.on_delete: Callable[[int], None] | None = None
        self.stream_error: Exception | None = None
        self._next_item_id = first_item_id

    def add_app(
        self,
        app_id: int,
        schema: list[dict[str, Any]],
        items: list[dict[str, Any]] | None = None,
    ) -> None:
        self.schemas[app_id] = schema
        self.apps[app_id] = list(items or [])

    def items(self, app_id: int) -> list[dict[str, Any]]:
        return self.apps.get(app_id, [])

    def _matching(self, app_id: int, filters: dict[str, Any] | None) -> list[dict[str, Any]]:
        items = self.items(app_id)
        field_filters = {
            key: value
            for key, value in (filters or {}).items()
            if key not in _PLATFORM_FILTER_KEYS
        }
        for external_id, value in field_filters.items():
            wanted = normalize_match_value(value)
            items = [
                item
                for item in items
                if normalize_match_value(extract_match_value(item, external_id)) == wanted
            ]
        return items

    def _find(self, item_id: int) -> tuple[int, dict[str, Any]] | None:
        for app_id, items in self.apps.items():
            for item in items:
                if item["item_id"] == item_id:
                    return app_id, item
        return None

    # Reads

    async def get_app_schema(self, app_id: int) -> list[dict[str, Any]]:
        self.schema_fetches += 1
        return [dict(field) for field in self.schemas.get(app_id, [])]

    def clear_schema_cache(self, app_id: int | None = None) -> None:
        self.schema_cache_clears += 1

    async def filter_items(
        self,
        app_id: int,
        limit: int = 500,
        offset: int = 0,
        filters: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        matching = self._matching(app_id, filters)
        return {
            "items": matching[offset : offset + limit],
            "filtered": len(matching),
            "total": len(self.items(app_id)),
        }

    async def stream_items(
        self,
        app_id: int,
        batch_size: int = 500,
        offset: int = 0,
        filters: dict[str, Any] | None = None,
    ):
        if self.stream_error is not None:
            raise self.stream_error
        current = offset
        while True:
            response = await self.filter_items(
                app_id, limit=batch_size, offset=current, filters=filters
            )
            items = response["items"]
            if not items:
                break
            current += len(items)
            yield items
            if current >= response["filtered"]:
                break

    async def count_items(
        self, app_id: int, filters: dict[str, Any] | None = None
    ) -> dict[str, int]:
        response = await self.filter_items(app_id, limit=1, filters=filters)
        return {"total": response["total"], "filtered": response["filtered"]}

    async def get_item(self, item_id: int) -> dict[str, Any]:
        found = self._find(item_id)
        if found is None:
            raise NotFoundError("Item not found", status_code=404)
        return found[1]

    async def fetch_items_by_ids(
        self, item_ids: list[int], concurrency: int = 5
    ) -> list[dict[str, Any]]:
        items = []
        for item_id in item_ids:
            found = self._find(item_id)
            if found is not None:
                items.append(found[1])
        return items

    async def find_item_by_field_value(
        self, app_id: int, external_id: str, value: Any
    ) -> dict[str, Any] | None:
        if value is None or value == "":
            return None
        matching = self._matching(app_id, {external_id: value})
        return matching[0] if matching else None

    # Writes

    async def create_item(
        self,
        app_id: int,
        fields: dict[str, Any],
        external_id: str | None = None,
        silent: bool = False,
        hook: bool = True,
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self.on_create is not None:
            self.on_create(app_id, fields)

        item_id = self._next_item_id
        self._next_item_id += 1
        item = make_item(item_id)
        item["fields"] = [
            {"external_id": key, "type": "text", "values": [{"value": value}]}
            for key, value in fields.items()
        ]
        self.apps.setdefault(app_id, []).append(item)
        self.created.append(
            {"app_id": app_id, "item_id": item_id, "fields": fields, "external_id": external_id}
        )
        return {"item_id": item_id}

    async def update_item(
        self,
        item_id: int,
        fields: dict[str, Any],
        silent: bool = False,
        hook: bool = True,
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self.on_update is not None:
            self.on_update(item_id, fields)
        self.updated.append({"item_id": item_id, "fields": fields})
        return {"revision": len(self.updated)}

    async def delete_item(self, item_id: int) -> None:
        if self.on_delete is not None:
            self.on_delete(item_id)
        found = self._find(item_id)
        if found is not None:
            app_id, item = found
            self.apps[app_id].remove(item)
        self.deleted.append(item_id)


class FakeClock:
    """Manually advanced clock usable wherever a ``time.time`` callable is accepted."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
