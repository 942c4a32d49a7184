"""
Unit tests for the duplicate-detection cache.
"""

import asyncio

import pytest

from item_bridge.client.exceptions import (
    NetworkError,
    PrefetchStalledError,
    PrefetchTimeoutError,
)
from item_bridge.migration.prefetch_cache import PrefetchCache
from tests.fixtures import FakeClock, FakePlatform, contact_schema, make_item

TARGET_APP_ID = 2

# --- Fixtures ---


@pytest.fixture
def target() -> FakePlatform:
    platform = FakePlatform("target")
    platform.add_app(
        TARGET_APP_ID,
        contact_schema(),
        [
            make_item(1, email="alice@example.com", name="Alice"),
            make_item(2, email="Bob@Example.com", name="Bob"),
            make_item(3, email=None, name="No email"),
            make_item(4, email="   ", name="Blank email"),
            make_item(5, email="42", name="Numeric"),
        ],
    )
    return platform


class SlowTarget:
    """Target whose stream never delivers a page."""

    async def stream_items(self, app_id, batch_size=500):
        await asyncio.sleep(10)
        yield []


class TestBuild:
    """Scanning the target app."""

    @pytest.mark.asyncio
    async def test_indexes_non_empty_values(self, target: FakePlatform) -> None:
        """Items without a usable match value are not indexed."""
        cache = PrefetchCache(stream_batch_size=2)

        indexed = await cache.build(target, TARGET_APP_ID, "email")

        assert indexed == 3
        assert cache.is_built
        assert len(cache) == 3

    @pytest.mark.asyncio
    async def test_stream_failure_leaves_cache_unbuilt(self, target: FakePlatform) -> None:
        target.stream_error = NetworkError("connection reset")
        cache = PrefetchCache()

        with pytest.raises(NetworkError):
            await cache.build(target, TARGET_APP_ID, "email")

        assert not cache.is_built
        assert cache.is_empty()

    @pytest.mark.asyncio
    async def test_stalled_stream(self) -> None:
        cache = PrefetchCache(stall_timeout_seconds=0.05, build_timeout_seconds=5)

        with pytest.raises(PrefetchStalledError) as exc_info:
            await cache.build(SlowTarget(), TARGET_APP_ID, "email")

        assert "stall_timeout_seconds" in exc_info.value.remediation
        assert not cache.is_built

    @pytest.mark.asyncio
    async def test_build_timeout(self) -> None:
        cache = PrefetchCache(stall_timeout_seconds=5, build_timeout_seconds=0.05)

        with pytest.raises(PrefetchTimeoutError):
            await cache.build(SlowTarget(), TARGET_APP_ID, "email")

        assert not cache.is_built


class TestLookup:
    """Answering duplicate checks."""

    @pytest.mark.asyncio
    async def test_lookup_normalizes_source_values(self, target: FakePlatform) -> None:
        cache = PrefetchCache()
        await cache.build(target, TARGET_APP_ID, "email")

        assert cache.lookup("ALICE@EXAMPLE.COM ") == 1
        assert cache.lookup("bob@example.com") == 2
        assert cache.lookup(42.0) == 5
        assert cache.lookup("carol@example.com") is None

    @pytest.mark.asyncio
    async def test_empty_values_never_match(self, target: FakePlatform) -> None:
        cache = PrefetchCache()
        await cache.build(target, TARGET_APP_ID, "email")

        assert cache.lookup(None) is None
        assert cache.lookup("  ") is None
        assert cache.misses == 2

    @pytest.mark.asyncio
    async def test_expired_entries_are_evicted(self, target: FakePlatform) -> None:
        clock = FakeClock()
        cache = PrefetchCache(ttl_seconds=60, clock=clock)
        await cache.build(target, TARGET_APP_ID, "email")

        clock.advance(61)

        assert cache.lookup("alice@example.com") is None
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_stats(self, target: FakePlatform) -> None:
        clock = FakeClock()
        cache = PrefetchCache(clock=clock)
        await cache.build(target, TARGET_APP_ID, "email")
        clock.advance(30)

        cache.lookup("alice@example.com")
        cache.lookup("nobody@example.com")
        stats = cache.stats()

        assert stats["total_items"] == 3
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0
        assert stats["oldest_entry_age_seconds"] == 30.0


class TestLifecycle:
    """Clearing and dropping the cache."""

    @pytest.mark.asyncio
    async def test_invalidate_and_drop(self, target: FakePlatform) -> None:
        cache = PrefetchCache()
        await cache.build(target, TARGET_APP_ID, "email")
        cache.lookup("alice@example.com")

        cache.invalidate()
        assert not cache.is_built
        assert cache.is_empty()
        assert cache.hits == 1

        cache.drop()
        assert cache.hits == 0
        assert cache.stats()["total_items"] == 0
