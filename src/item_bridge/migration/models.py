"""Data models for item migration jobs.

Persisted documents (the job record, its progress, checkpoints and the
failure log entries) are pydantic models so they round-trip through JSON.
Values that only live for the duration of a run (write requests, batch
results, progress events, previews) are plain dataclasses.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle status of a migration job."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MigrationMode(str, Enum):
    """How source items are written to the target app."""

    CREATE = "create"
    UPDATE = "update"
    UPSERT = "upsert"


class DuplicateBehavior(str, Enum):
    """What a create-mode run does when the target already holds a match."""

    SKIP = "skip"
    ERROR = "error"
    UPDATE = "update"


class ErrorCategory(str, Enum):
    """Per-item failure taxonomy."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    PERMISSION = "permission"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"


JobErrorContext = Literal[
    "job_lifecycle",
    "migration_execution",
    "prefetch_failed",
    "field_mapping_validation",
    "pause_operation",
]


# Job configuration (discriminated on ``kind``)


class ItemFilters(BaseModel):
    """Source item filters. Dates use the ``YYYY-MM-DD`` format."""

    created_from: str | None = None
    created_to: str | None = None
    last_edit_from: str | None = None
    last_edit_to: str | None = None
    tags: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.created_from
            or self.created_to
            or self.last_edit_from
            or self.last_edit_to
            or self.tags
        )


class ItemMigrationConfig(BaseModel):
    """Configuration of an item migration between two apps."""

    kind: Literal["item_migration"] = "item_migration"
    source_app_id: int = Field(..., gt=0)
    target_app_id: int = Field(..., gt=0)
    mode: MigrationMode = MigrationMode.CREATE
    field_mapping: dict[str, str] = Field(
        default_factory=dict, description="Source field -> target field (external ids)"
    )
    source_match_field: str | None = None
    target_match_field: str | None = None
    duplicate_behavior: DuplicateBehavior = DuplicateBehavior.SKIP
    batch_size: int = Field(default=500, ge=1, le=500)
    concurrency: int = Field(default=5, ge=1, le=25)
    stop_on_error: bool = False
    silent: bool = True
    filters: ItemFilters | None = None
    max_items: int | None = Field(default=None, ge=1)
    smoke_test_items: int = Field(default=3, ge=0, le=20)

    @property
    def effective_duplicate_behavior(self) -> DuplicateBehavior:
        """Upsert always updates the matched record."""
        if self.mode == MigrationMode.UPSERT:
            return DuplicateBehavior.UPDATE
        return self.duplicate_behavior


class CleanupConfig(BaseModel):
    """Configuration of a duplicate-record cleanup job."""

    kind: Literal["cleanup"] = "cleanup"
    app_id: int = Field(..., gt=0)
    match_field: str
    keep_strategy: Literal["oldest", "newest"] = "oldest"
    dry_run: bool = True


class DeleteConfig(BaseModel):
    """Configuration of a bulk item deletion job."""

    kind: Literal["delete"] = "delete"
    app_id: int = Field(..., gt=0)
    filters: ItemFilters | None = None
    max_items: int | None = Field(default=None, ge=1)


JobConfig = Annotated[
    ItemMigrationConfig | CleanupConfig | DeleteConfig, Field(discriminator="kind")
]


# Persisted job state


class BatchCheckpoint(BaseModel):
    """Durable marker written after each source page is fully flushed."""

    batch_number: int = Field(..., ge=1)
    offset: int = Field(..., ge=0, description="Source offset the next run resumes from")
    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    status: Literal["completed", "partial", "failed"] = "completed"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class ThroughputMetrics(BaseModel):
    """Rolling throughput figures derived from recent batches."""

    items_per_second: float = 0.0
    batches_per_minute: float = 0.0
    avg_batch_duration_ms: float = 0.0
    eta_seconds: float | None = None
    estimated_completion_at: datetime | None = None
    rate_limit_pauses: int = 0
    total_rate_limit_delay_ms: float = 0.0


class MigrationProgress(BaseModel):
    """Progress counters. ``processed`` always equals ``successful + failed``."""

    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    percent: int = 0
    last_update: datetime = Field(default_factory=utcnow)
    throughput: ThroughputMetrics | None = None
    batch_checkpoints: list[BatchCheckpoint] = Field(default_factory=list)
    failed_items_by_category: dict[str, int] = Field(default_factory=dict)

    def recalculate(self) -> None:
        """Restore the processed invariant and refresh ``percent``."""
        self.processed = self.successful + self.failed
        self.percent = round(self.processed / self.total * 100) if self.total > 0 else 0
        self.last_update = utcnow()


class JobError(BaseModel):
    """A job-level failure recorded on the job."""

    context: JobErrorContext
    message: str
    code: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class MigrationJob(BaseModel):
    """Root aggregate persisted by the job state store."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    kind: Literal["item_migration", "cleanup", "delete"] = "item_migration"
    status: JobStatus = JobStatus.PLANNING
    source_app_id: int | None = None
    target_app_id: int | None = None
    mode: MigrationMode | None = None
    field_mapping: dict[str, str] = Field(default_factory=dict)
    config: JobConfig
    progress: MigrationProgress = Field(default_factory=MigrationProgress)
    errors: list[JobError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None
    pause_requested: bool = False
    retry_attempts: int = 0
    last_retry_at: datetime | None = None
    pre_retry_snapshot: dict[str, Any] | None = None

    @classmethod
    def from_config(cls, job_id: str, config: ItemMigrationConfig | CleanupConfig | DeleteConfig):
        """Build a new ``planning`` job for ``config``."""
        job = cls(id=job_id, kind=config.kind, config=config)
        if isinstance(config, ItemMigrationConfig):
            job.source_app_id = config.source_app_id
            job.target_app_id = config.target_app_id
            job.mode = config.mode
            job.field_mapping = dict(config.field_mapping)
        return job

    def latest_checkpoint(self) -> BatchCheckpoint | None:
        checkpoints = self.progress.batch_checkpoints
        if not checkpoints:
            return None
        return max(checkpoints, key=lambda cp: cp.batch_number)


class FailedItemDetail(BaseModel):
    """One failure-log line."""

    source_item_id: int | None = None
    target_item_id: int | None = None
    error: str
    error_category: ErrorCategory
    error_code: str | None = None
    attempt_count: int = 1
    first_attempt_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: datetime = Field(default_factory=utcnow)


# Run-time values


@dataclass
class CreateRequest:
    """A queued item creation."""

    fields: dict[str, Any]
    source_item_id: int | None = None
    external_id: str | None = None


@dataclass
class UpdateRequest:
    """A queued update of an existing target item."""

    item_id: int
    fields: dict[str, Any]
    source_item_id: int | None = None


@dataclass
class FailedItem:
    """A write that failed after all permitted attempts."""

    error: str
    category: ErrorCategory
    code: str
    source_item_id: int | None = None
    target_item_id: int | None = None
    attempt_count: int = 1
    first_attempt_at: datetime = field(default_factory=utcnow)
    last_attempt_at: datetime = field(default_factory=utcnow)

    def to_detail(self) -> FailedItemDetail:
        return FailedItemDetail(
            source_item_id=self.source_item_id,
            target_item_id=self.target_item_id,
            error=self.error,
            error_category=self.category,
            error_code=self.code,
            attempt_count=self.attempt_count,
            first_attempt_at=self.first_attempt_at,
            last_attempt_at=self.last_attempt_at,
        )


@dataclass
class BatchResult:
    """Outcome of processing a list of writes."""

    successful: int = 0
    failed: int = 0
    total: int = 0
    failed_items: list[FailedItem] = field(default_factory=list)
    errors_by_category: dict[str, int] = field(default_factory=dict)
    created_item_ids: list[int] = field(default_factory=list)
    # stop_on_error ended the run; ``unsubmitted`` holds requests never sent
    aborted: bool = False
    unsubmitted: list[CreateRequest | UpdateRequest] = field(default_factory=list)

    def record_failure(self, item: FailedItem) -> None:
        self.failed += 1
        self.failed_items.append(item)
        key = item.category.value
        self.errors_by_category[key] = self.errors_by_category.get(key, 0) + 1

    def merge(self, other: "BatchResult") -> None:
        """Fold ``other`` into this result."""
        self.successful += other.successful
        self.failed += other.failed
        self.total += other.total
        self.failed_items.extend(other.failed_items)
        self.created_item_ids.extend(other.created_item_ids)
        self.aborted = self.aborted or other.aborted
        self.unsubmitted.extend(other.unsubmitted)
        for category, count in other.errors_by_category.items():
            self.errors_by_category[category] = self.errors_by_category.get(category, 0) + count


class ProgressEventKind(str, Enum):
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    PROGRESS = "progress"
    RATE_LIMIT_PAUSED = "rate_limit_paused"
    RATE_LIMIT_RESUMED = "rate_limit_resumed"


@dataclass
class ProgressEvent:
    """Event published by the batch processor onto the progress queue."""

    kind: ProgressEventKind
    batch_number: int = 0
    total_batches: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    total: int = 0
    duration_ms: float | None = None
    reason: str | None = None
    wait_seconds: float | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class MigrationResult:
    """Summary returned when a run ends."""

    job_id: str
    status: JobStatus
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)


@dataclass
class FieldChange:
    field: str
    current_value: Any
    new_value: Any
    will_change: bool


@dataclass
class PreviewCreate:
    source_item_id: int
    fields: dict[str, Any]


@dataclass
class PreviewUpdate:
    source_item_id: int
    target_item_id: int
    changes: list[FieldChange]
    change_count: int


@dataclass
class PreviewSkip:
    source_item_id: int
    reason: str
    target_item_id: int | None = None


@dataclass
class PreviewFailure:
    source_item_id: int
    reason: str
    category: ErrorCategory = ErrorCategory.VALIDATION


@dataclass
class DryRunPreview:
    """What a run would do, without writing anything."""

    would_create: list[PreviewCreate] = field(default_factory=list)
    would_update: list[PreviewUpdate] = field(default_factory=list)
    would_skip: list[PreviewSkip] = field(default_factory=list)
    would_fail: list[PreviewFailure] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MappingValidationResult:
    """Outcome of a field-mapping smoke test."""

    valid: bool
    tested: int = 0
    created: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class JobStatusReport:
    """Operator-facing job status."""

    job_id: str
    status: JobStatus
    mode: MigrationMode | None
    progress: MigrationProgress
    throughput: ThroughputMetrics | None
    errors_by_category: dict[str, dict[str, Any]]
    failed_items: list[FailedItemDetail]
    can_resume: bool
    retry_attempts: int = 0
    pre_retry_snapshot: dict[str, Any] | None = None
    errors: list[JobError] = field(default_factory=list)
