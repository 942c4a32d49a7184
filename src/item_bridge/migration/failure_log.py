"""Append-only per-job failure log.

Full failure detail is kept out of the job state file so the state file
stays small. Each job gets ``{log_dir}/{job_id}/failures.log`` holding one
JSON object per line.
"""

import asyncio
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from item_bridge.migration.models import FailedItemDetail
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class FailureLog:
    """JSON-lines store of ``FailedItemDetail`` records keyed by job id."""

    def __init__(self, log_dir: str | Path):
        self.log_dir = Path(log_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def path(self, job_id: str) -> Path:
        return self.log_dir / job_id / "failures.log"

    def _append_sync(self, job_id: str, lines: list[str]) -> None:
        path = self.path(job_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.writelines(lines)

    async def append(self, job_id: str, details: list[FailedItemDetail]) -> None:
        """Append failure records for ``job_id``."""
        if not details:
            return
        lines = [detail.model_dump_json() + "\n" for detail in details]
        async with self._lock_for(job_id):
            await asyncio.to_thread(self._append_sync, job_id, lines)
        logger.debug("failures_logged", job_id=job_id, count=len(details))

    def _read_sync(self, job_id: str, limit: int | None) -> list[FailedItemDetail]:
        path = self.path(job_id)
        if not path.exists():
            return []

        details: list[FailedItemDetail] = []
        with open(path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    details.append(FailedItemDetail.model_validate_json(line))
                except PydanticValidationError as e:
                    logger.warning(
                        "failure_log_line_skipped",
                        job_id=job_id,
                        line=line_number,
                        error=str(e).splitlines()[0],
                    )
                    continue
                if limit is not None and len(details) >= limit:
                    break
        return details

    async def read(self, job_id: str, limit: int | None = None) -> list[FailedItemDetail]:
        """Read failure records; unreadable lines are skipped.

        Args:
            job_id: Job identifier
            limit: Maximum number of records to return

        Returns:
            Records in the order they were written
        """
        return await asyncio.to_thread(self._read_sync, job_id, limit)

    async def count(self, job_id: str) -> int:
        return len(await self.read(job_id))

    async def source_item_ids(self, job_id: str) -> list[int]:
        """Distinct source item ids of logged failures, in first-seen order."""
        seen: dict[int, None] = {}
        for detail in await self.read(job_id):
            if detail.source_item_id and detail.source_item_id > 0:
                seen.setdefault(detail.source_item_id, None)
        return list(seen)

    async def clear(self, job_id: str) -> None:
        """Remove all records for ``job_id``."""
        async with self._lock_for(job_id):
            await asyncio.to_thread(self.path(job_id).unlink, True)
        logger.info("failure_log_cleared", job_id=job_id)
