"""In-memory duplicate-detection cache for a target app.

Before a migration starts writing, the whole target app is scanned once and
every item's match-field value is indexed by its normalized key. Lookups
during the run are then answered without API calls.

Each migration run owns its own ``PrefetchCache`` instance.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from item_bridge.client.exceptions import PrefetchStalledError, PrefetchTimeoutError
from item_bridge.migration.field_mapping import extract_field_value, find_item_field
from item_bridge.migration.normalizer import NumberRounding, normalize_match_value
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CacheEntry:
    """Slim index entry; the full target item is never stored."""

    target_item_id: int
    match_value: str
    created_at: float
    collection_id: int


class PrefetchCache:
    """Index from normalized match value to target item id.

    Entries expire after ``ttl_seconds`` and are evicted lazily on lookup.
    Empty normalized values are never cached and never match.
    """

    def __init__(
        self,
        ttl_seconds: float = 43200,
        rounding: NumberRounding = "half_up",
        stream_batch_size: int = 500,
        build_timeout_seconds: float = 1800,
        stall_timeout_seconds: float = 120,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize an empty cache.

        Args:
            ttl_seconds: Entry lifetime
            rounding: Numeric rounding mode used by the normalizer
            stream_batch_size: Page size for the target scan
            build_timeout_seconds: Overall time budget for ``build``
            stall_timeout_seconds: Maximum wait for the next target page
            clock: Time source (seconds since epoch)
        """
        self.ttl_seconds = ttl_seconds
        self.rounding = rounding
        self.stream_batch_size = stream_batch_size
        self.build_timeout_seconds = build_timeout_seconds
        self.stall_timeout_seconds = stall_timeout_seconds
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._collection_id: int | None = None
        self._match_field: str | None = None
        self._built = False
        self.hits = 0
        self.misses = 0

    @property
    def is_built(self) -> bool:
        return self._built

    def _key(self, normalized: str) -> str:
        return f"{self._collection_id}|{self._match_field}|{normalized}"

    async def build(self, client: Any, collection_id: int, match_field: str) -> int:
        """Scan the target app and index every non-empty match value.

        Any failure leaves the cache empty and unbuilt: a partial index would
        report false misses and cause duplicate creation.

        Args:
            client: Platform client for the target instance
            collection_id: Target app id
            match_field: External id of the target match field

        Returns:
            Number of indexed entries

        Raises:
            PrefetchTimeoutError: If the scan exceeds ``build_timeout_seconds``
            PrefetchStalledError: If no page arrives within ``stall_timeout_seconds``
        """
        self._entries.clear()
        self._built = False
        self._collection_id = collection_id
        self._match_field = match_field

        logger.info("prefetch_started", app_id=collection_id, match_field=match_field)
        start = time.monotonic()

        try:
            scanned = await asyncio.wait_for(
                self._scan(client, collection_id, match_field),
                timeout=self.build_timeout_seconds,
            )
        except TimeoutError as e:
            self._entries.clear()
            raise PrefetchTimeoutError(
                f"Building the duplicate cache for app {collection_id} exceeded "
                f"{self.build_timeout_seconds}s",
                remediation=(
                    "Increase cache.build_timeout_seconds, narrow the target app, or retry "
                    "when the platform is less loaded"
                ),
            ) from e
        except BaseException:
            self._entries.clear()
            raise

        self._built = True
        duration = time.monotonic() - start
        logger.info(
            "prefetch_complete",
            app_id=collection_id,
            match_field=match_field,
            items_scanned=scanned,
            unique_keys=len(self._entries),
            duration_seconds=round(duration, 2),
            items_per_second=round(scanned / duration) if duration > 0 else scanned,
        )
        return len(self._entries)

    async def _scan(self, client: Any, collection_id: int, match_field: str) -> int:
        pages = client.stream_items(collection_id, batch_size=self.stream_batch_size)
        scanned = 0
        try:
            while True:
                try:
                    page = await asyncio.wait_for(
                        pages.__anext__(), timeout=self.stall_timeout_seconds
                    )
                except StopAsyncIteration:
                    break
                except TimeoutError as e:
                    raise PrefetchStalledError(
                        f"Target app {collection_id} returned no page for "
                        f"{self.stall_timeout_seconds}s after {scanned} items",
                        remediation=(
                            "Check platform availability and the rate-limit status, then "
                            "restart the migration; raise cache.stall_timeout_seconds for "
                            "very slow instances"
                        ),
                    ) from e

                for item in page:
                    scanned += 1
                    self._index_item(item, collection_id, match_field)

                logger.debug(
                    "prefetch_page_indexed",
                    app_id=collection_id,
                    page_size=len(page),
                    items_scanned=scanned,
                    unique_keys=len(self._entries),
                )
        finally:
            await pages.aclose()
        return scanned

    def _index_item(self, item: dict[str, Any], collection_id: int, match_field: str) -> None:
        field = find_item_field(item, match_field)
        if field is None or not field.get("values"):
            return

        normalized = normalize_match_value(extract_field_value(field), self.rounding)
        if not normalized:
            return

        self._entries[self._key(normalized)] = CacheEntry(
            target_item_id=item["item_id"],
            match_value=normalized,
            created_at=self._clock(),
            collection_id=collection_id,
        )

    def lookup(self, raw_value: Any) -> int | None:
        """Return the target item id for ``raw_value``, or None.

        Args:
            raw_value: Source match value (not yet normalized)

        Returns:
            Matching target item id, or None on a miss
        """
        normalized = normalize_match_value(raw_value, self.rounding)
        if not normalized:
            self.misses += 1
            return None

        key = self._key(normalized)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.created_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            logger.debug("prefetch_entry_expired", match_value=normalized)
            return None

        self.hits += 1
        return entry.target_item_id

    def clear(self) -> None:
        """Remove all entries, keeping counters and the configured scope."""
        self._entries.clear()

    def invalidate(self) -> None:
        """Discard entries and mark the cache as needing a rebuild."""
        self._entries.clear()
        self._built = False
        logger.info(
            "prefetch_invalidated", app_id=self._collection_id, match_field=self._match_field
        )

    def drop(self) -> None:
        """Release everything held by the cache."""
        self._entries.clear()
        self._built = False
        self._collection_id = None
        self._match_field = None
        self.hits = 0
        self.misses = 0

    def is_empty(self) -> bool:
        return not self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Return size, hit/miss counters and the age of the oldest entry."""
        lookups = self.hits + self.misses
        now = self._clock()
        oldest = min((entry.created_at for entry in self._entries.values()), default=None)
        return {
            "total_items": len(self._entries),
            "unique_keys": len({entry.match_value for entry in self._entries.values()}),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups * 100, 1) if lookups else 0.0,
            "oldest_entry_age_seconds": round(now - oldest, 1) if oldest is not None else 0.0,
        }

    def log_stats(self) -> None:
        logger.info(
            "prefetch_cache_stats",
            app_id=self._collection_id,
            match_field=self._match_field,
            **self.stats(),
        )
