"""Durable job state storage.

Each job is one JSON document at ``{data_dir}/{job_id}.json``. Every write:

1. copies the current (valid) file to ``{job_id}.json.bak``
2. writes the new document to a uniquely named temp file and fsyncs it
3. re-reads the temp file and checks its length and JSON structure
4. renames the temp file over the job file

The sequence is retried with exponential backoff on I/O errors. Reads that
hit a corrupted job file restore the backup once before giving up.

Writes for one job id are serialized through a per-job ``asyncio.Lock``.
"""

import asyncio
import json
import os
import shutil
import uuid
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from item_bridge.client.exceptions import StateCorruptionError, StateError
from item_bridge.migration.models import (
    BatchCheckpoint,
    CleanupConfig,
    DeleteConfig,
    ItemMigrationConfig,
    JobError,
    JobErrorContext,
    JobStatus,
    MigrationJob,
    ThroughputMetrics,
    utcnow,
)
from item_bridge.utils.logging import get_logger, log_checkpoint
from item_bridge.utils.retry import file_write_retrying

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobStateStore:
    """JSON-file store for migration jobs.

    Usage:
        store = JobStateStore("data/migrations")
        job = await store.create(config)
        await store.update_status(job.id, JobStatus.IN_PROGRESS)
    """

    def __init__(self, data_dir: str | Path, write_retry_attempts: int = 3):
        """Initialize the store.

        Args:
            data_dir: Directory holding job files
            write_retry_attempts: Attempts for each atomic write
        """
        self.data_dir = Path(data_dir)
        self.write_retry_attempts = write_retry_attempts
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def job_path(self, job_id: str) -> Path:
        return self.data_dir / f"{job_id}.json"

    def backup_path(self, job_id: str) -> Path:
        return self.data_dir / f"{job_id}.json.bak"

    # Low-level file operations (run in a worker thread)

    @staticmethod
    def _is_valid_json_file(path: Path) -> bool:
        try:
            json.loads(path.read_bytes())
        except (OSError, ValueError):
            return False
        return True

    def _write_sync(self, job_id: str, payload: bytes, backup: bool) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.job_path(job_id)

        if backup and path.exists() and self._is_valid_json_file(path):
            shutil.copy2(path, self.backup_path(job_id))

        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(temp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())

            written = temp_path.read_bytes()
            if len(written) != len(payload):
                raise StateError(
                    f"Short write for job {job_id}: {len(written)} of {len(payload)} bytes"
                )
            try:
                json.loads(written)
            except ValueError as e:
                raise StateError(f"Written state for job {job_id} does not parse: {e}") from e

            os.replace(temp_path, path)
        finally:
            temp_path.unlink(missing_ok=True)

    async def _write(self, job: MigrationJob, backup: bool = True) -> None:
        payload = job.model_dump_json(indent=2).encode("utf-8")

        async for attempt in file_write_retrying(
            max_attempts=self.write_retry_attempts, retry_on_exceptions=(OSError, StateError)
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "job_state_write_retry",
                        job_id=job.id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                await asyncio.to_thread(self._write_sync, job.id, payload, backup)

    async def _recover(self, job_id: str, cause: Exception) -> MigrationJob:
        backup = self.backup_path(job_id)
        logger.warning("job_state_corrupted", job_id=job_id, error=str(cause))

        if not backup.exists():
            raise StateCorruptionError(
                f"State file for job {job_id} is corrupted and no backup exists"
            ) from cause

        try:
            text = await asyncio.to_thread(backup.read_text, encoding="utf-8")
            job = MigrationJob.model_validate_json(text)
        except (OSError, ValueError) as e:
            raise StateCorruptionError(
                f"State file and backup for job {job_id} are both unreadable"
            ) from e

        await self._write(job, backup=False)
        logger.warning("job_state_recovered_from_backup", job_id=job_id)
        return job

    async def _load(self, job_id: str) -> MigrationJob | None:
        path = self.job_path(job_id)
        if not path.exists():
            return None

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return MigrationJob.model_validate_json(text)
        except (PydanticValidationError, ValueError) as e:
            return await self._recover(job_id, e)

    async def _load_required(self, job_id: str) -> MigrationJob:
        job = await self._load(job_id)
        if job is None:
            raise StateError(f"Job not found: {job_id}")
        return job

    # Public API

    async def create(
        self,
        config: ItemMigrationConfig | CleanupConfig | DeleteConfig,
        job_id: str | None = None,
    ) -> MigrationJob:
        """Create and persist a new job in ``planning`` status.

        Raises:
            StateError: If a job with the same id already exists
        """
        job_id = job_id or str(uuid.uuid4())
        async with self._lock_for(job_id):
            if self.job_path(job_id).exists():
                raise StateError(f"Job already exists: {job_id}")
            job = MigrationJob.from_config(job_id, config)
            await self._write(job)

        logger.info("job_created", job_id=job_id, kind=job.kind)
        return job

    async def get(self, job_id: str) -> MigrationJob | None:
        """Load a job, restoring it from backup if the file is corrupted.

        Raises:
            StateCorruptionError: If neither the file nor its backup is readable
        """
        async with self._lock_for(job_id):
            return await self._load(job_id)

    async def update(self, job_id: str, mutate: Callable[[MigrationJob], None]) -> MigrationJob:
        """Apply ``mutate`` to the stored job and persist the result atomically.

        Args:
            job_id: Job identifier
            mutate: Callback that edits the job in place

        Returns:
            The updated job
        """
        async with self._lock_for(job_id):
            job = await self._load_required(job_id)
            mutate(job)
            await self._write(job)
            return job

    async def update_status(self, job_id: str, status: JobStatus) -> MigrationJob:
        def apply(job: MigrationJob) -> None:
            job.status = status
            if status in TERMINAL_STATUSES:
                job.completed_at = utcnow()
            elif status == JobStatus.IN_PROGRESS:
                job.completed_at = None
                job.last_heartbeat = utcnow()
            if status != JobStatus.IN_PROGRESS:
                job.pause_requested = False

        job = await self.update(job_id, apply)
        logger.info("job_status_updated", job_id=job_id, status=status.value)
        return job

    async def update_progress(
        self,
        job_id: str,
        total: int | None = None,
        successful: int | None = None,
        failed: int | None = None,
        skipped: int | None = None,
        failed_items_by_category: dict[str, int] | None = None,
    ) -> MigrationJob:
        """Set progress counters and refresh the heartbeat.

        ``processed`` and ``percent`` are derived; they cannot be set directly.
        """

        def apply(job: MigrationJob) -> None:
            _apply_progress(job, total, successful, failed, skipped, failed_items_by_category)

        return await self.update(job_id, apply)

    async def save_checkpoint(
        self,
        job_id: str,
        checkpoint: BatchCheckpoint,
        successful: int | None = None,
        failed: int | None = None,
        skipped: int | None = None,
        failed_items_by_category: dict[str, int] | None = None,
        throughput: ThroughputMetrics | None = None,
    ) -> MigrationJob:
        """Insert or replace the checkpoint with the same batch number.

        Progress counters and throughput passed along are written in the same
        atomic update, so a resumed run never sees a checkpoint whose counts
        are missing (or counts without their checkpoint).
        """

        def apply(job: MigrationJob) -> None:
            _apply_progress(job, None, successful, failed, skipped, failed_items_by_category)
            if throughput is not None:
                job.progress.throughput = throughput
            checkpoints = [
                cp
                for cp in job.progress.batch_checkpoints
                if cp.batch_number != checkpoint.batch_number
            ]
            checkpoints.append(checkpoint)
            checkpoints.sort(key=lambda cp: cp.batch_number)
            job.progress.batch_checkpoints = checkpoints
            job.last_heartbeat = utcnow()

        job = await self.update(job_id, apply)
        log_checkpoint(
            logger,
            job_id=job_id,
            batch_number=checkpoint.batch_number,
            offset=checkpoint.offset,
            items_processed=checkpoint.items_processed,
        )
        return job

    async def latest_checkpoint(self, job_id: str) -> BatchCheckpoint | None:
        job = await self.get(job_id)
        return job.latest_checkpoint() if job else None

    async def increment_failed_count(
        self, job_id: str, category: str, count: int = 1
    ) -> MigrationJob:
        """Count ``count`` more failures of ``category``."""

        def apply(job: MigrationJob) -> None:
            by_category = job.progress.failed_items_by_category
            by_category[category] = by_category.get(category, 0) + count
            job.progress.failed += count
            job.progress.recalculate()

        return await self.update(job_id, apply)

    async def add_error(
        self,
        job_id: str,
        context: JobErrorContext,
        message: str,
        code: str | None = None,
    ) -> MigrationJob:
        """Append a job-level error."""

        def apply(job: MigrationJob) -> None:
            job.errors.append(JobError(context=context, message=message, code=code))

        job = await self.update(job_id, apply)
        logger.warning("job_error_recorded", job_id=job_id, context=context, code=code)
        return job

    async def set_pause_requested(self, job_id: str, requested: bool = True) -> MigrationJob:
        def apply(job: MigrationJob) -> None:
            job.pause_requested = requested

        return await self.update(job_id, apply)

    async def list(self) -> list[MigrationJob]:
        """Return all readable jobs, newest first."""
        if not self.data_dir.exists():
            return []

        jobs = []
        for path in sorted(self.data_dir.glob("*.json")):
            job_id = path.stem
            try:
                job = await self.get(job_id)
            except StateCorruptionError as e:
                logger.warning("job_state_unreadable", job_id=job_id, error=str(e))
                continue
            if job is not None:
                jobs.append(job)

        jobs.sort(key=lambda job: job.started_at, reverse=True)
        return jobs

    async def delete(self, job_id: str) -> bool:
        """Delete a job file, its backup and any leftover temp files.

        Returns:
            True if the job file existed
        """
        async with self._lock_for(job_id):
            path = self.job_path(job_id)
            existed = path.exists()
            path.unlink(missing_ok=True)
            self.backup_path(job_id).unlink(missing_ok=True)
            for leftover in self.data_dir.glob(f"{job_id}.json.*.tmp"):
                leftover.unlink(missing_ok=True)

        self._locks.pop(job_id, None)
        if existed:
            logger.info("job_deleted", job_id=job_id)
        return existed


def _apply_progress(
    job: MigrationJob,
    total: int | None,
    successful: int | None,
    failed: int | None,
    skipped: int | None,
    failed_items_by_category: dict[str, int] | None,
) -> None:
    progress = job.progress
    if total is not None:
        progress.total = total
    if successful is not None:
        progress.successful = successful
    if failed is not None:
        progress.failed = failed
    if skipped is not None:
        progress.skipped = skipped
    if failed_items_by_category is not None:
        progress.failed_items_by_category = dict(failed_items_by_category)
    progress.recalculate()
    job.last_heartbeat = utcnow()
