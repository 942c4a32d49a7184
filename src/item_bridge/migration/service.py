"""Job control: create, start, pause, resume, retry and inspect migrations.

The service owns the lifecycle rules. It checks every transition against
the job's persisted status, records rejected transitions on the job as
``job_lifecycle`` errors, and hands the actual work to an ``ItemMigrator``
produced by the injected factory.
"""

from collections.abc import Callable
from datetime import timedelta

from item_bridge.client.exceptions import JobLifecycleError, MigrationError, StateError
from item_bridge.migration.cancellation import PauseToken
from item_bridge.migration.error_classifier import OPERATOR_RETRYABLE_CATEGORIES
from item_bridge.migration.failure_log import FailureLog
from item_bridge.migration.models import (
    CleanupConfig,
    DeleteConfig,
    FailedItemDetail,
    ItemMigrationConfig,
    JobStatus,
    JobStatusReport,
    MigrationJob,
    MigrationResult,
    utcnow,
)
from item_bridge.migration.orchestrator import ItemMigrator
from item_bridge.migration.state import JobStateStore
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_FAILED_ITEMS_LIMIT = 100

RESUMABLE_STATUSES = frozenset({JobStatus.PAUSED, JobStatus.FAILED})

_RETRYABLE_CATEGORY_VALUES = frozenset(
    category.value for category in OPERATOR_RETRYABLE_CATEGORIES
)


class MigrationService:
    """Lifecycle operations over persisted migration jobs.

    Usage:
        service = MigrationService(store, failure_log, lambda: ItemMigrator(...))
        job_id = await service.create_job(config)
        result = await service.start(job_id)
    """

    def __init__(
        self,
        state_store: JobStateStore,
        failure_log: FailureLog,
        migrator_factory: Callable[[], ItemMigrator],
        heartbeat_stale_seconds: int = 300,
    ):
        """Initialize the service.

        Args:
            state_store: Job state store
            failure_log: Per-job failure log
            migrator_factory: Builds the migrator used for each run
            heartbeat_stale_seconds: Heartbeat age after which an in-progress
                job is considered abandoned
        """
        self.state_store = state_store
        self.failure_log = failure_log
        self.migrator_factory = migrator_factory
        self.heartbeat_stale_seconds = heartbeat_stale_seconds
        self._tokens: dict[str, PauseToken] = {}

    async def _require(self, job_id: str) -> MigrationJob:
        job = await self.state_store.get(job_id)
        if job is None:
            raise StateError(f"Job not found: {job_id}")
        return job

    async def _reject(self, job: MigrationJob, message: str) -> JobLifecycleError:
        await self.state_store.add_error(job.id, "job_lifecycle", message, "INVALID_TRANSITION")
        logger.warning("job_transition_rejected", job_id=job.id, status=job.status.value)
        return JobLifecycleError(message)

    @staticmethod
    def _migration_config(job: MigrationJob) -> ItemMigrationConfig:
        if not isinstance(job.config, ItemMigrationConfig):
            raise MigrationError(
                f"Job {job.id} is a '{job.kind}' job; only item migrations can be run"
            )
        return job.config

    def _heartbeat_is_stale(self, job: MigrationJob) -> bool:
        if job.last_heartbeat is None:
            return True
        age = utcnow() - job.last_heartbeat
        return age > timedelta(seconds=self.heartbeat_stale_seconds)

    def is_running(self, job_id: str) -> bool:
        """Whether ``job_id`` is currently executing in this process."""
        return job_id in self._tokens

    async def _run(
        self,
        job: MigrationJob,
        token: PauseToken | None,
        retry_failures: list[FailedItemDetail] | None = None,
    ) -> MigrationResult:
        config = self._migration_config(job)
        token = token or PauseToken()
        self._tokens[job.id] = token
        try:
            migrator = self.migrator_factory()
            return await migrator.execute(config, job.id, token, retry_failures=retry_failures)
        finally:
            self._tokens.pop(job.id, None)

    async def create_job(self, config: ItemMigrationConfig | CleanupConfig | DeleteConfig) -> str:
        """Persist a new job in ``planning`` status and return its id."""
        job = await self.state_store.create(config)
        return job.id

    async def start(self, job_id: str, token: PauseToken | None = None) -> MigrationResult:
        """Run a job that has not been started yet.

        Raises:
            JobLifecycleError: If the job is not in ``planning`` status
        """
        job = await self._require(job_id)
        if job.status != JobStatus.PLANNING:
            raise await self._reject(
                job, f"Cannot start job {job_id}: status is {job.status.value}, expected planning"
            )
        return await self._run(job, token)

    async def pause(self, job_id: str) -> MigrationJob:
        """Ask a running job to stop at its next page boundary.

        A job running in this process is paused through its token. For a job
        owned by another process the request is persisted; when that job's
        heartbeat is stale the job is cancelled instead.

        Raises:
            JobLifecycleError: If the job is not ``in_progress``
        """
        job = await self._require(job_id)
        if job.status != JobStatus.IN_PROGRESS:
            raise await self._reject(
                job, f"Cannot pause job {job_id}: status is {job.status.value}"
            )

        token = self._tokens.get(job_id)
        if token is not None:
            token.request_pause("pause requested")
            return await self.state_store.set_pause_requested(job_id)

        if self._heartbeat_is_stale(job):
            logger.warning(
                "stale_job_force_cancelled",
                job_id=job_id,
                last_heartbeat=job.last_heartbeat.isoformat() if job.last_heartbeat else None,
            )
            await self.state_store.add_error(
                job_id,
                "pause_operation",
                f"Job {job_id} stopped sending heartbeats; marked as cancelled",
                "STALE_JOB_FORCE_CANCELLED",
            )
            return await self.state_store.update_status(job_id, JobStatus.CANCELLED)

        logger.info("pause_request_persisted", job_id=job_id)
        return await self.state_store.set_pause_requested(job_id)

    async def resume(self, job_id: str, token: PauseToken | None = None) -> MigrationResult:
        """Continue a paused or failed job from its latest checkpoint.

        Raises:
            JobLifecycleError: If the job is not resumable or has no checkpoint
        """
        job = await self._require(job_id)
        if job.status not in RESUMABLE_STATUSES:
            raise await self._reject(
                job, f"Cannot resume job {job_id}: status is {job.status.value}"
            )
        checkpoint = job.latest_checkpoint()
        if checkpoint is None:
            raise await self._reject(job, f"Cannot resume job {job_id}: no checkpoint recorded")

        logger.info(
            "job_resuming",
            job_id=job_id,
            batch_number=checkpoint.batch_number,
            offset=checkpoint.offset,
        )
        return await self._run(job, token)

    async def retry(self, job_id: str, token: PauseToken | None = None) -> MigrationResult:
        """Re-process the source items recorded in the job's failure log.

        The log is cleared and the failure counts reversed up front. If the
        retry pauses or fails, entries for items it never reached are written
        back, so no failure is lost between runs.

        Raises:
            JobLifecycleError: If the job is running or has no retryable failures
        """
        job = await self._require(job_id)
        if job.status in (JobStatus.IN_PROGRESS, JobStatus.PLANNING):
            raise await self._reject(
                job, f"Cannot retry job {job_id}: status is {job.status.value}"
            )
        self._migration_config(job)

        details = await self.failure_log.read(job_id)
        retryable = [d for d in details if d.source_item_id and d.source_item_id > 0]
        if not retryable:
            raise await self._reject(job, f"Cannot retry job {job_id}: no recorded failures")

        item_ids = list(dict.fromkeys(d.source_item_id for d in retryable))
        reversed_by_category: dict[str, int] = {}
        for detail in retryable:
            key = detail.error_category.value
            reversed_by_category[key] = reversed_by_category.get(key, 0) + 1

        def apply(job: MigrationJob) -> None:
            progress = job.progress
            job.pre_retry_snapshot = {
                "successful": progress.successful,
                "failed": progress.failed,
                "skipped": progress.skipped,
                "processed": progress.processed,
                "failed_items_by_category": dict(progress.failed_items_by_category),
                "taken_at": utcnow().isoformat(),
            }
            job.retry_attempts += 1
            job.last_retry_at = utcnow()

            by_category = dict(progress.failed_items_by_category)
            for key, count in reversed_by_category.items():
                remaining = by_category.get(key, 0) - count
                if remaining > 0:
                    by_category[key] = remaining
                else:
                    by_category.pop(key, None)
            progress.failed_items_by_category = by_category
            progress.failed = max(progress.failed - len(retryable), 0)
            progress.recalculate()

        job = await self.state_store.update(job_id, apply)

        # Entries without a source id cannot be retried; keep them on record
        kept = [d for d in details if not (d.source_item_id and d.source_item_id > 0)]
        await self.failure_log.clear(job_id)
        if kept:
            await self.failure_log.append(job_id, kept)

        logger.info(
            "job_retry_started",
            job_id=job_id,
            attempt=job.retry_attempts,
            items=len(item_ids),
        )
        return await self._run(job, token, retry_failures=retryable)

    async def get_status(self, job_id: str) -> JobStatusReport:
        """Summarize a job for operators."""
        job = await self._require(job_id)
        progress = job.progress

        errors_by_category = {}
        for category, count in sorted(progress.failed_items_by_category.items()):
            percentage = round(count / progress.failed * 100, 1) if progress.failed else 0.0
            errors_by_category[category] = {
                "count": count,
                "percentage": percentage,
                "should_retry": category in _RETRYABLE_CATEGORY_VALUES,
            }

        failed_items = await self.failure_log.read(job_id, limit=STATUS_FAILED_ITEMS_LIMIT)
        return JobStatusReport(
            job_id=job.id,
            status=job.status,
            mode=job.mode,
            progress=progress,
            throughput=progress.throughput,
            errors_by_category=errors_by_category,
            failed_items=failed_items,
            can_resume=job.status in RESUMABLE_STATUSES and job.latest_checkpoint() is not None,
            retry_attempts=job.retry_attempts,
            pre_retry_snapshot=job.pre_retry_snapshot,
            errors=list(job.errors),
        )

    async def list_jobs(self) -> list[MigrationJob]:
        return await self.state_store.list()

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job and its failure log.

        Raises:
            JobLifecycleError: If the job is still running
        """
        job = await self.state_store.get(job_id)
        if job is None:
            return False
        if self.is_running(job_id) or (
            job.status == JobStatus.IN_PROGRESS and not self._heartbeat_is_stale(job)
        ):
            raise await self._reject(job, f"Cannot delete job {job_id}: it is still running")

        await self.failure_log.clear(job_id)
        return await self.state_store.delete(job_id)

