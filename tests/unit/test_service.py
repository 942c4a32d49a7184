"""
Tests for job lifecycle control: start, pause, resume, retry and status.
"""

import asyncio
from datetime import timedelta

import pytest

from item_bridge.client.exceptions import JobLifecycleError, MigrationError, ServerError
from item_bridge.migration.cancellation import PauseToken
from item_bridge.migration.failure_log import FailureLog
from item_bridge.migration.models import (
    CleanupConfig,
    ErrorCategory,
    ItemMigrationConfig,
    JobStatus,
    utcnow,
)
from item_bridge.migration.service import MigrationService
from item_bridge.migration.state import JobStateStore
from tests.fixtures import FakePlatform, contact_schema, make_item, schema_field

SOURCE_APP_ID = 1
TARGET_APP_ID = 2

# --- Fixtures ---


@pytest.fixture(autouse=True)
def apps(source: FakePlatform, target: FakePlatform) -> None:
    source.add_app(
        SOURCE_APP_ID,
        contact_schema(),
        [make_item(n, email=f"user{n}@example.com", name=f"User {n}") for n in range(1, 31)],
    )
    target.add_app(TARGET_APP_ID, contact_schema())


@pytest.fixture
def config() -> ItemMigrationConfig:
    return ItemMigrationConfig(
        source_app_id=SOURCE_APP_ID,
        target_app_id=TARGET_APP_ID,
        batch_size=10,
        smoke_test_items=0,
    )


@pytest.fixture
def failing_emails(target: FakePlatform) -> set[str]:
    """Emails whose create returns 503 while they are in the set."""
    failing = {"user2@example.com", "user4@example.com"}

    def unavailable(app_id, fields):
        if fields.get("email") in failing:
            raise ServerError("Server error: unavailable", status_code=503)

    target.on_create = unavailable
    return failing


async def _in_progress(state_store: JobStateStore, job_id: str, heartbeat_age: float = 0) -> None:
    def apply(job) -> None:
        job.status = JobStatus.IN_PROGRESS
        job.last_heartbeat = utcnow() - timedelta(seconds=heartbeat_age)

    await state_store.update(job_id, apply)


class TestLifecycle:
    """Allowed and rejected transitions."""

    @pytest.mark.asyncio
    async def test_start_runs_job(
        self, service: MigrationService, config: ItemMigrationConfig, target: FakePlatform
    ) -> None:
        job_id = await service.create_job(config)

        result = await service.start(job_id)

        assert result.status == JobStatus.COMPLETED
        assert result.successful == 30
        assert len(target.created) == 30
        assert not service.is_running(job_id)

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        config: ItemMigrationConfig,
    ) -> None:
        job_id = await service.create_job(config)
        await service.start(job_id)

        with pytest.raises(JobLifecycleError, match="expected planning"):
            await service.start(job_id)

        job = await state_store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.errors[-1].context == "job_lifecycle"
        assert job.errors[-1].code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_resume_requires_paused_or_failed(
        self, service: MigrationService, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)

        with pytest.raises(JobLifecycleError):
            await service.resume(job_id)

        await service.start(job_id)
        with pytest.raises(JobLifecycleError):
            await service.resume(job_id)

    @pytest.mark.asyncio
    async def test_resume_requires_checkpoint(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        config: ItemMigrationConfig,
        target: FakePlatform,
    ) -> None:
        target.schemas[TARGET_APP_ID] = [schema_field(201, "unrelated", type="number")]
        job_id = await service.create_job(config)
        result = await service.start(job_id)
        assert result.status == JobStatus.FAILED

        with pytest.raises(JobLifecycleError, match="no checkpoint"):
            await service.resume(job_id)

    @pytest.mark.asyncio
    async def test_pause_and_resume(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        config: ItemMigrationConfig,
        target: FakePlatform,
    ) -> None:
        """A pause issued while the job runs stops it after the current page."""
        job_id = await service.create_job(config)
        pauses: list[asyncio.Task] = []

        def pause_once(app_id, fields):
            if not pauses:
                pauses.append(asyncio.get_running_loop().create_task(service.pause(job_id)))

        target.on_create = pause_once

        paused = await service.start(job_id)
        await asyncio.gather(*pauses)

        assert paused.status == JobStatus.PAUSED
        assert paused.successful == 10
        assert (await service.get_status(job_id)).can_resume is True

        target.on_create = None
        resumed = await service.resume(job_id)

        assert resumed.status == JobStatus.COMPLETED
        assert resumed.successful == 30
        assert len({c["external_id"] for c in target.created}) == 30

    @pytest.mark.asyncio
    async def test_only_item_migrations_run(self, service: MigrationService) -> None:
        job_id = await service.create_job(CleanupConfig(app_id=5, match_field="email"))

        with pytest.raises(MigrationError, match="cleanup"):
            await service.start(job_id)


class TestPauseOtherProcess:
    """Pausing jobs that are not running in this process."""

    @pytest.mark.asyncio
    async def test_pause_requires_in_progress(
        self, service: MigrationService, state_store: JobStateStore, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)

        with pytest.raises(JobLifecycleError):
            await service.pause(job_id)

        assert (await state_store.get(job_id)).errors[-1].code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_persists_request(
        self, service: MigrationService, state_store: JobStateStore, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)
        await _in_progress(state_store, job_id, heartbeat_age=5)

        job = await service.pause(job_id)

        assert job.status == JobStatus.IN_PROGRESS
        assert job.pause_requested is True

    @pytest.mark.asyncio
    async def test_stale_heartbeat_cancels_job(
        self, service: MigrationService, state_store: JobStateStore, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)
        await _in_progress(state_store, job_id, heartbeat_age=600)

        job = await service.pause(job_id)

        assert job.status == JobStatus.CANCELLED
        assert job.pause_requested is False
        assert job.errors[-1].context == "pause_operation"
        assert job.errors[-1].code == "STALE_JOB_FORCE_CANCELLED"


class TestRetry:
    """Re-processing logged failures."""

    @pytest.mark.asyncio
    async def test_retry_clears_failures(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        failure_log: FailureLog,
        config: ItemMigrationConfig,
        target: FakePlatform,
        failing_emails: set[str],
    ) -> None:
        job_id = await service.create_job(config)
        first = await service.start(job_id)
        assert first.failed == 2
        assert first.successful == 28

        failing_emails.clear()
        retried = await service.retry(job_id)

        assert retried.status == JobStatus.COMPLETED
        assert retried.successful == 30
        assert retried.failed == 0
        assert len(target.created) == 30

        job = await state_store.get(job_id)
        assert job.retry_attempts == 1
        assert job.last_retry_at is not None
        assert job.pre_retry_snapshot["failed"] == 2
        assert job.pre_retry_snapshot["failed_items_by_category"] == {"network": 2}
        assert job.progress.failed_items_by_category == {}
        assert job.progress.processed == 30
        assert await failure_log.read(job_id) == []

    @pytest.mark.asyncio
    async def test_retry_of_vanished_source_item(
        self,
        service: MigrationService,
        failure_log: FailureLog,
        config: ItemMigrationConfig,
        source: FakePlatform,
        failing_emails: set[str],
    ) -> None:
        job_id = await service.create_job(config)
        await service.start(job_id)
        failing_emails.clear()
        source.apps[SOURCE_APP_ID] = [
            item for item in source.apps[SOURCE_APP_ID] if item["item_id"] != 2
        ]

        retried = await service.retry(job_id)

        assert retried.successful == 29
        assert retried.failed == 1
        failures = await failure_log.read(job_id)
        assert [(f.source_item_id, f.error_code) for f in failures] == [(2, "NOT_FOUND")]
        assert failures[0].error_category == ErrorCategory.VALIDATION

    @pytest.mark.asyncio
    async def test_paused_retry_keeps_unreached_failures(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        failure_log: FailureLog,
        target: FakePlatform,
        failing_emails: set[str],
    ) -> None:
        """Failures the retry never reached stay logged and counted."""
        config = ItemMigrationConfig(
            source_app_id=SOURCE_APP_ID,
            target_app_id=TARGET_APP_ID,
            batch_size=2,
            smoke_test_items=0,
        )
        failing_emails.update({"user6@example.com", "user8@example.com"})
        job_id = await service.create_job(config)
        first = await service.start(job_id)
        assert first.failed == 4

        failing_emails.clear()
        token = PauseToken()
        target.on_create = lambda app_id, fields: token.request_pause("operator")

        paused = await service.retry(job_id, token)

        assert paused.status == JobStatus.PAUSED
        assert paused.successful == 28
        assert paused.failed == 2
        failures = await failure_log.read(job_id)
        assert sorted(f.source_item_id for f in failures) == [6, 8]
        job = await state_store.get(job_id)
        assert job.progress.failed == 2
        assert job.progress.failed_items_by_category == {"network": 2}
        assert job.progress.processed == 30

        target.on_create = None
        retried = await service.retry(job_id)

        assert retried.status == JobStatus.COMPLETED
        assert retried.successful == 30
        assert retried.failed == 0
        assert await failure_log.read(job_id) == []

    @pytest.mark.asyncio
    async def test_failed_retry_keeps_unreached_failures(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        failure_log: FailureLog,
        source: FakePlatform,
        failing_emails: set[str],
    ) -> None:
        config = ItemMigrationConfig(
            source_app_id=SOURCE_APP_ID,
            target_app_id=TARGET_APP_ID,
            batch_size=1,
            smoke_test_items=0,
        )
        job_id = await service.create_job(config)
        await service.start(job_id)
        failing_emails.clear()

        fetches = source.fetch_items_by_ids

        async def unavailable_after_first(item_ids, concurrency=5):
            if item_ids != [2]:
                raise ServerError("Server error: unavailable", status_code=503)
            return await fetches(item_ids, concurrency=concurrency)

        source.fetch_items_by_ids = unavailable_after_first

        result = await service.retry(job_id)

        assert result.status == JobStatus.FAILED
        failures = await failure_log.read(job_id)
        assert [f.source_item_id for f in failures] == [4]
        job = await state_store.get(job_id)
        assert job.progress.successful == 29
        assert job.progress.failed == 1
        assert job.progress.failed_items_by_category == {"network": 1}

    @pytest.mark.asyncio
    async def test_create_retry_recreates_without_matching(
        self,
        service: MigrationService,
        source: FakePlatform,
        target: FakePlatform,
        failing_emails: set[str],
    ) -> None:
        """A matched create job retries by recreating, even with a blank match value."""
        config = ItemMigrationConfig(
            source_app_id=SOURCE_APP_ID,
            target_app_id=TARGET_APP_ID,
            batch_size=10,
            smoke_test_items=0,
            source_match_field="email",
            target_match_field="email",
        )
        job_id = await service.create_job(config)
        first = await service.start(job_id)
        assert first.failed == 2

        failing_emails.clear()
        source.apps[SOURCE_APP_ID][1] = make_item(2, email=None, name="User 2")

        retried = await service.retry(job_id)

        assert retried.status == JobStatus.COMPLETED
        assert retried.successful == 30
        assert retried.skipped == 0
        assert retried.failed == 0
        assert sorted(c["fields"]["name"] for c in target.created[-2:]) == ["User 2", "User 4"]

    @pytest.mark.asyncio
    async def test_retry_without_failures_is_rejected(
        self, service: MigrationService, state_store: JobStateStore, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)
        await service.start(job_id)

        with pytest.raises(JobLifecycleError, match="no recorded failures"):
            await service.retry(job_id)

        assert (await state_store.get(job_id)).retry_attempts == 0

    @pytest.mark.asyncio
    async def test_retry_of_unstarted_job_is_rejected(
        self, service: MigrationService, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)

        with pytest.raises(JobLifecycleError):
            await service.retry(job_id)


class TestInspection:
    """Status reports, listing and deletion."""

    @pytest.mark.asyncio
    async def test_status_report(
        self,
        service: MigrationService,
        config: ItemMigrationConfig,
        failing_emails: set[str],
    ) -> None:
        job_id = await service.create_job(config)
        await service.start(job_id)

        report = await service.get_status(job_id)

        assert report.status == JobStatus.COMPLETED
        assert report.progress.percent == 100
        assert report.errors_by_category == {
            "network": {"count": 2, "percentage": 100.0, "should_retry": True}
        }
        assert sorted(f.source_item_id for f in report.failed_items) == [2, 4]
        assert report.can_resume is False
        assert report.throughput is not None

    @pytest.mark.asyncio
    async def test_list_jobs(self, service: MigrationService, config: ItemMigrationConfig) -> None:
        first = await service.create_job(config)
        second = await service.create_job(config)

        jobs = await service.list_jobs()

        assert {job.id for job in jobs} == {first, second}

    @pytest.mark.asyncio
    async def test_delete_job(
        self,
        service: MigrationService,
        state_store: JobStateStore,
        failure_log: FailureLog,
        config: ItemMigrationConfig,
        failing_emails: set[str],
    ) -> None:
        job_id = await service.create_job(config)
        await service.start(job_id)

        assert await service.delete_job(job_id) is True
        assert await state_store.get(job_id) is None
        assert await failure_log.read(job_id) == []
        assert await service.delete_job(job_id) is False

    @pytest.mark.asyncio
    async def test_delete_running_job_is_rejected(
        self, service: MigrationService, state_store: JobStateStore, config: ItemMigrationConfig
    ) -> None:
        job_id = await service.create_job(config)
        await _in_progress(state_store, job_id)

        with pytest.raises(JobLifecycleError, match="still running"):
            await service.delete_job(job_id)

        assert await state_store.get(job_id) is not None
