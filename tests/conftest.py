"""
Shared pytest fixtures for the item bridge tests.

This module provides:
- Storage fixtures (state_store, failure_log) rooted in a temporary directory
- Platform doubles for the source and target instances
- A migrator and a migration service wired to those doubles
"""

from pathlib import Path

import pytest

from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.config import PerformanceConfig
from item_bridge.migration.failure_log import FailureLog
from item_bridge.migration.orchestrator import ItemMigrator
from item_bridge.migration.service import MigrationService
from item_bridge.migration.state import JobStateStore
from tests.fixtures import FakePlatform


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# --- Storage ---


@pytest.fixture
def state_store(tmp_path: Path) -> JobStateStore:
    return JobStateStore(tmp_path / "state")


@pytest.fixture
def failure_log(tmp_path: Path) -> FailureLog:
    return FailureLog(tmp_path / "failures")


# --- Platform doubles ---


@pytest.fixture
def tracker() -> RateLimitTracker:
    return RateLimitTracker()


@pytest.fixture
def source() -> FakePlatform:
    return FakePlatform("source", first_item_id=50001)


@pytest.fixture
def target() -> FakePlatform:
    return FakePlatform("target", first_item_id=90001)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


# --- Engine ---


@pytest.fixture
def performance() -> PerformanceConfig:
    return PerformanceConfig(max_retries=2)


@pytest.fixture
def make_migrator(source, target, state_store, failure_log, tracker, fake_sleep, performance):
    """Factory building migrators that share the test doubles."""

    def factory(progress_queue=None) -> ItemMigrator:
        return ItemMigrator(
            source_client=source,
            target_client=target,
            state_store=state_store,
            failure_log=failure_log,
            tracker=tracker,
            performance=performance,
            progress_queue=progress_queue,
            sleep=fake_sleep,
        )

    return factory


@pytest.fixture
def migrator(make_migrator) -> ItemMigrator:
    return make_migrator()


@pytest.fixture
def service(state_store, failure_log, make_migrator) -> MigrationService:
    return MigrationService(state_store, failure_log, make_migrator)
