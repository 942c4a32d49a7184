"""Item migration orchestration.

``ItemMigrator`` runs one migration job end to end:

1. resolve the field mapping against both app schemas and validate the
   match fields
2. smoke-test the mapping on a few real items (fresh create runs only)
3. build the duplicate-detection cache from the target app
4. stream source pages from the last checkpoint, decide per item whether it
   is created, updated, skipped or failed, and write each page through a
   ``BatchProcessor``
5. after every page: append failures to the failure log and persist the
   checkpoint together with the progress counters
6. stop at a page boundary when a pause is requested, and fail the job
   after recording the page when ``stop_on_error`` fires

Retry runs process the failure-log entries of an earlier run instead of the
stream. Create-mode retries recreate the items without duplicate matching;
update and upsert retries resolve matches with targeted lookups rather than
a full cache.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from item_bridge.client.exceptions import (
    FieldNotFoundError,
    ItemBridgeError,
    MappingValidationError,
    MigrationError,
    StateError,
)
from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.config import CacheConfig, PerformanceConfig
from item_bridge.migration.batch_processor import BatchProcessor
from item_bridge.migration.cancellation import PauseToken
from item_bridge.migration.error_classifier import classify_error
from item_bridge.migration.failure_log import FailureLog
from item_bridge.migration.field_mapping import (
    Schema,
    build_default_field_mapping,
    build_platform_filters,
    extract_field_value,
    extract_match_value,
    find_item_field,
    map_item_fields,
    resolve_field_mapping,
    resolve_match_field,
    strip_vanished_fields,
    validate_match_fields,
)
from item_bridge.migration.models import (
    BatchCheckpoint,
    BatchResult,
    CreateRequest,
    DryRunPreview,
    DuplicateBehavior,
    ErrorCategory,
    FailedItem,
    FailedItemDetail,
    FieldChange,
    ItemMigrationConfig,
    JobStatus,
    MappingValidationResult,
    MigrationMode,
    MigrationResult,
    PreviewCreate,
    PreviewFailure,
    PreviewSkip,
    PreviewUpdate,
    UpdateRequest,
    utcnow,
)
from item_bridge.migration.normalizer import NumberRounding, normalize_match_value
from item_bridge.migration.prefetch_cache import PrefetchCache
from item_bridge.migration.state import JobStateStore
from item_bridge.migration.throughput import ThroughputCalculator
from item_bridge.utils.logging import get_logger, log_error, log_migration_progress

logger = get_logger(__name__)

MIGRATED_EXTERNAL_ID_PREFIX = "migrated-"
VALIDATION_EXTERNAL_ID_PREFIX = "bridge-validation-"

Lookup = Callable[[Any], Awaitable[int | None]]


@dataclass
class _Decision:
    action: Literal["create", "update", "skip", "fail", "abort"]
    source_item_id: int
    fields: dict[str, Any] = field(default_factory=dict)
    target_item_id: int | None = None
    reason: str = ""
    code: str = ""
    category: ErrorCategory = ErrorCategory.VALIDATION


@dataclass
class _RunContext:
    job_id: str
    config: ItemMigrationConfig
    mapping: dict[str, str]
    source_match: str | None
    target_match: str | None
    target_schema: Schema
    processor: BatchProcessor
    throughput: ThroughputCalculator
    cache: PrefetchCache | None = None
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    schema_refreshed: bool = False
    # Job-ending error raised once the page that hit it is recorded
    abort_error: Exception | None = None

    @property
    def processed(self) -> int:
        return self.successful + self.failed


class ItemMigrator:
    """Moves items from a source app to a target app.

    Usage:
        migrator = ItemMigrator(source, target, store, failure_log, tracker)
        result = await migrator.execute(config, job_id)
    """

    def __init__(
        self,
        source_client: Any,
        target_client: Any,
        state_store: JobStateStore,
        failure_log: FailureLog,
        tracker: RateLimitTracker,
        performance: PerformanceConfig | None = None,
        cache_config: CacheConfig | None = None,
        rounding: NumberRounding = "half_up",
        progress_queue: asyncio.Queue | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the migrator.

        Args:
            source_client: Platform client for the source instance
            target_client: Platform client for the target instance
            state_store: Job state store
            failure_log: Per-job failure log
            tracker: Rate-limit tracker shared with the target client
            performance: Retry, pause and connection tuning
            cache_config: Duplicate-detection cache settings
            rounding: Numeric match-value canonicalization
            progress_queue: Optional queue receiving ProgressEvent objects
            sleep: Coroutine used for retry delays
        """
        self.source = source_client
        self.target = target_client
        self.state_store = state_store
        self.failure_log = failure_log
        self.tracker = tracker
        self.performance = performance or PerformanceConfig()
        self.cache_config = cache_config or CacheConfig()
        self.rounding = rounding
        self.progress_queue = progress_queue
        self._sleep = sleep

    # Preparation

    async def _prepare(
        self, config: ItemMigrationConfig
    ) -> tuple[dict[str, str], str | None, str | None, Schema]:
        source_schema = await self.source.get_app_schema(config.source_app_id)
        target_schema = await self.target.get_app_schema(config.target_app_id)

        if config.field_mapping:
            mapping = resolve_field_mapping(config.field_mapping, source_schema, target_schema)
        else:
            mapping = build_default_field_mapping(source_schema, target_schema)
        if not mapping:
            raise MappingValidationError(
                f"No writable target fields are mapped from app {config.source_app_id} "
                f"to app {config.target_app_id}"
            )

        validate_match_fields(config, source_schema, target_schema)
        source_match = resolve_match_field(config.source_match_field, source_schema)
        target_match = resolve_match_field(config.target_match_field, target_schema)
        return mapping, source_match, target_match, target_schema

    def _new_cache(self) -> PrefetchCache:
        return PrefetchCache(
            ttl_seconds=self.cache_config.ttl_seconds,
            rounding=self.rounding,
            stream_batch_size=self.cache_config.stream_batch_size,
            build_timeout_seconds=self.cache_config.build_timeout_seconds,
            stall_timeout_seconds=self.cache_config.stall_timeout_seconds,
        )

    def _new_processor(
        self, config: ItemMigrationConfig, throughput: ThroughputCalculator | None = None
    ) -> BatchProcessor:
        return BatchProcessor(
            self.target,
            config.target_app_id,
            self.tracker,
            batch_size=config.batch_size,
            concurrency=config.concurrency,
            max_retries=self.performance.max_retries,
            stop_on_error=config.stop_on_error,
            silent=config.silent,
            pause_threshold=self.performance.pause_threshold,
            max_rate_limit_wait=self.performance.max_rate_limit_wait,
            progress_queue=self.progress_queue,
            throughput=throughput,
            sleep=self._sleep,
        )

    # Per-item decisions

    async def _decide(
        self,
        item: dict[str, Any],
        config: ItemMigrationConfig,
        mapping: dict[str, str],
        source_match: str | None,
        lookup: Lookup,
    ) -> _Decision:
        source_id = item["item_id"]
        fields = map_item_fields(item, mapping)

        if not source_match:
            return _Decision("create", source_id, fields)

        raw = extract_match_value(item, source_match)
        if normalize_match_value(raw, self.rounding) == "":
            if config.mode == MigrationMode.CREATE:
                return _Decision("skip", source_id, reason="match field is empty")
            return _Decision(
                "fail",
                source_id,
                reason=f"Source match field '{source_match}' is empty",
                code="MATCH_VALUE_MISSING",
            )

        target_id = await lookup(raw)

        if config.mode == MigrationMode.UPDATE:
            if target_id is None:
                return _Decision(
                    "fail",
                    source_id,
                    reason=f"No matching item found for {source_match}={raw!r}",
                    code="NO_MATCH",
                )
            return _Decision("update", source_id, fields, target_item_id=target_id)

        if config.mode == MigrationMode.UPSERT:
            if target_id is None:
                return _Decision("create", source_id, fields)
            return _Decision("update", source_id, fields, target_item_id=target_id)

        if target_id is None:
            return _Decision("create", source_id, fields)

        behavior = config.effective_duplicate_behavior
        if behavior == DuplicateBehavior.SKIP:
            return _Decision(
                "skip", source_id, target_item_id=target_id, reason="duplicate exists in target"
            )
        if behavior == DuplicateBehavior.UPDATE:
            return _Decision("update", source_id, fields, target_item_id=target_id)
        return _Decision(
            "abort",
            source_id,
            target_item_id=target_id,
            reason=f"Duplicate item found for {source_match}={raw!r}: target item {target_id}",
        )

    def _cache_lookup(self, cache: PrefetchCache | None) -> Lookup:
        async def lookup(raw: Any) -> int | None:
            return cache.lookup(raw) if cache is not None else None

        return lookup

    def _targeted_lookup(self, config: ItemMigrationConfig, target_match: str | None) -> Lookup:
        async def lookup(raw: Any) -> int | None:
            if not target_match:
                return None
            match = await self.target.find_item_by_field_value(
                config.target_app_id, target_match, raw
            )
            return match.get("item_id") if match else None

        return lookup

    async def _decide_safely(
        self,
        item: dict[str, Any],
        config: ItemMigrationConfig,
        mapping: dict[str, str],
        source_match: str | None,
        lookup: Lookup,
    ) -> _Decision:
        try:
            return await self._decide(item, config, mapping, source_match, lookup)
        except ItemBridgeError as e:
            classified = classify_error(e)
            return _Decision(
                "fail",
                item["item_id"],
                reason=str(e),
                code=classified.code,
                category=classified.category,
            )

    # Writing

    async def _refresh_target_schema(self, ctx: _RunContext) -> None:
        logger.warning(
            "target_schema_refresh",
            job_id=ctx.job_id,
            target_app_id=ctx.config.target_app_id,
        )
        self.source.clear_schema_cache(ctx.config.source_app_id)
        self.target.clear_schema_cache(ctx.config.target_app_id)
        ctx.target_schema = await self.target.get_app_schema(ctx.config.target_app_id)

        known = {f["external_id"] for f in ctx.target_schema if f.get("external_id")}
        dropped = sorted(set(ctx.mapping.values()) - known)
        ctx.mapping = {src: dst for src, dst in ctx.mapping.items() if dst in known}
        if dropped:
            logger.warning("mapped_fields_vanished", job_id=ctx.job_id, fields=dropped)

        if ctx.cache is not None and ctx.target_match:
            ctx.cache.invalidate()
            if ctx.target_match in known:
                await ctx.cache.build(self.target, ctx.config.target_app_id, ctx.target_match)

    async def _submit_with_schema_recovery(
        self,
        ctx: _RunContext,
        requests: list[CreateRequest] | list[UpdateRequest],
        submit: Callable[[list], Awaitable[BatchResult]],
    ) -> BatchResult:
        try:
            return await submit(requests)
        except FieldNotFoundError as e:
            if ctx.schema_refreshed:
                raise
            ctx.schema_refreshed = True
            partial = e.partial_result
            if not isinstance(partial, BatchResult):
                partial = BatchResult()
            pending = e.pending or []
            await self._refresh_target_schema(ctx)

            stripped = [
                replace(request, fields=strip_vanished_fields(request.fields, ctx.target_schema))
                for request in pending
            ]
            logger.info(
                "field_not_found_retry",
                job_id=ctx.job_id,
                pending=len(stripped),
                completed=partial.successful + partial.failed,
            )
            try:
                partial.merge(await submit(stripped))
            except FieldNotFoundError as again:
                if isinstance(again.partial_result, BatchResult):
                    partial.merge(again.partial_result)
                again.partial_result = partial
                raise
            partial.total = len(requests)
            return partial

    async def _flush(
        self,
        ctx: _RunContext,
        updates: list[UpdateRequest],
        creates: list[CreateRequest],
        result: BatchResult,
    ) -> None:
        """Submit a page's queued updates, then its creates, into ``result``.

        Raises:
            FieldNotFoundError: On a stale-schema failure after the one refresh;
                its ``pending`` includes the creates that were never submitted
        """
        refreshed = ctx.schema_refreshed
        if updates:
            try:
                result.merge(
                    await self._submit_with_schema_recovery(
                        ctx, updates, ctx.processor.process_update
                    )
                )
            except FieldNotFoundError as e:
                e.pending = [*(e.pending or []), *creates]
                raise
            if result.aborted:
                result.unsubmitted.extend(creates)
                return
            if ctx.schema_refreshed and not refreshed:
                # Creates were mapped before the refresh
                creates = [
                    replace(
                        request, fields=strip_vanished_fields(request.fields, ctx.target_schema)
                    )
                    for request in creates
                ]
        if creates:
            result.merge(
                await self._submit_with_schema_recovery(
                    ctx, creates, ctx.processor.process_create
                )
            )

    @staticmethod
    def _unwritten_failure(
        request: CreateRequest | UpdateRequest, error: str, code: str, category: ErrorCategory
    ) -> FailedItem:
        return FailedItem(
            error=error,
            category=category,
            code=code,
            source_item_id=request.source_item_id,
            target_item_id=getattr(request, "item_id", None),
        )

    async def _account(self, ctx: _RunContext, result: BatchResult, skipped: int) -> None:
        ctx.successful += result.successful
        ctx.failed += result.failed
        ctx.skipped += skipped
        for category, count in result.errors_by_category.items():
            ctx.by_category[category] = ctx.by_category.get(category, 0) + count

        if result.failed_items:
            await self.failure_log.append(
                ctx.job_id, [failure.to_detail() for failure in result.failed_items]
            )

    async def _run_page(
        self, ctx: _RunContext, items: list[dict[str, Any]], lookup: Lookup
    ) -> BatchResult:
        """Decide and write one page of source items.

        Every item ends up successful, failed or skipped. When ``stop_on_error``
        fires or the target schema changes again after the one refresh, the
        requests left unsent are recorded as failures, the result is flagged
        ``aborted`` and ``ctx.abort_error`` holds the error that ends the job.

        Raises:
            MigrationError: If a duplicate is found with duplicate_behavior=error
        """
        updates: list[UpdateRequest] = []
        creates: list[CreateRequest] = []
        result = BatchResult()
        skipped = 0

        for item in items:
            decision = await self._decide_safely(
                item, ctx.config, ctx.mapping, ctx.source_match, lookup
            )
            if decision.action == "abort":
                raise MigrationError(decision.reason)
            if decision.action == "skip":
                skipped += 1
                logger.debug(
                    "item_skipped",
                    job_id=ctx.job_id,
                    source_item_id=decision.source_item_id,
                    target_item_id=decision.target_item_id,
                    reason=decision.reason,
                )
            elif decision.action == "fail":
                result.record_failure(
                    FailedItem(
                        error=decision.reason,
                        category=decision.category,
                        code=decision.code,
                        source_item_id=decision.source_item_id,
                    )
                )
            elif decision.action == "update":
                updates.append(
                    UpdateRequest(
                        item_id=decision.target_item_id,
                        fields=decision.fields,
                        source_item_id=decision.source_item_id,
                    )
                )
            else:
                creates.append(
                    CreateRequest(
                        fields=decision.fields,
                        source_item_id=decision.source_item_id,
                        external_id=f"{MIGRATED_EXTERNAL_ID_PREFIX}{decision.source_item_id}",
                    )
                )

        # Failures recorded here never reach the processor; keep its event totals whole
        ctx.processor.processed += result.failed
        ctx.processor.failed += result.failed

        unwritten: list[FailedItem] = []
        try:
            await self._flush(ctx, updates, creates, result)
        except FieldNotFoundError as e:
            if isinstance(e.partial_result, BatchResult):
                result.merge(e.partial_result)
            result.aborted = True
            ctx.abort_error = e
            unwritten = [
                self._unwritten_failure(
                    request, str(e), "FIELD_NOT_FOUND", ErrorCategory.VALIDATION
                )
                for request in e.pending or []
            ]
        else:
            if result.aborted:
                ctx.abort_error = MigrationError(
                    "Stopped after a batch error because stop_on_error is set"
                )
            unwritten = [
                self._unwritten_failure(
                    request,
                    "Not submitted: run stopped after a batch error",
                    "NOT_SUBMITTED",
                    ErrorCategory.UNKNOWN,
                )
                for request in result.unsubmitted
            ]

        for failure in unwritten:
            result.record_failure(failure)
        ctx.processor.processed += len(unwritten)
        ctx.processor.failed += len(unwritten)
        result.unsubmitted = []
        result.total = len(items)

        await self._account(ctx, result, skipped)
        return result

    async def _pause_requested(self, job_id: str, token: PauseToken) -> bool:
        if token.pause_requested:
            return True
        job = await self.state_store.get(job_id)
        if job is not None and job.pause_requested:
            token.request_pause("persisted pause request")
            return True
        return False

    # Public API

    async def execute(
        self,
        config: ItemMigrationConfig,
        job_id: str,
        token: PauseToken | None = None,
        retry_failures: list[FailedItemDetail] | None = None,
    ) -> MigrationResult:
        """Run (or resume) a migration job.

        Failures are recorded on the job rather than raised: the returned
        result carries the final status.

        Args:
            config: Migration configuration
            job_id: Existing job identifier
            token: Pause token checked at page boundaries
            retry_failures: Failure-log entries to re-process instead of streaming;
                entries of items a paused or failed retry never reached are
                written back to the failure log

        Returns:
            MigrationResult with the final status and counters
        """
        token = token or PauseToken()
        started = time.monotonic()
        job = await self.state_store.get(job_id)
        if job is None:
            raise StateError(f"Job not found: {job_id}")

        retry_mode = retry_failures is not None
        retry_item_ids = (
            list(dict.fromkeys(d.source_item_id for d in retry_failures if d.source_item_id))
            if retry_failures is not None
            else None
        )
        checkpoint = None if retry_mode else job.latest_checkpoint()

        logger.info(
            "migration_started",
            job_id=job_id,
            source_app_id=config.source_app_id,
            target_app_id=config.target_app_id,
            mode=config.mode.value,
            retry=retry_mode,
            resume_offset=checkpoint.offset if checkpoint else 0,
        )

        try:
            mapping, source_match, target_match, target_schema = await self._prepare(config)
            if (
                config.mode == MigrationMode.CREATE
                and config.smoke_test_items > 0
                and not retry_mode
                and checkpoint is None
            ):
                validation = await self.validate_field_mapping(
                    config, config.smoke_test_items, mapping=mapping
                )
                if not validation.valid:
                    raise MappingValidationError(
                        "Field mapping smoke test failed: " + "; ".join(validation.errors)
                    )
        except MappingValidationError as e:
            return await self._fail(job_id, "field_mapping_validation", e, started)
        except ItemBridgeError as e:
            return await self._fail(job_id, "migration_execution", e, started)

        await self.state_store.update(job_id, lambda j: setattr(j, "field_mapping", mapping))

        throughput = ThroughputCalculator()
        ctx = _RunContext(
            job_id=job_id,
            config=config,
            mapping=mapping,
            source_match=source_match,
            target_match=target_match,
            target_schema=target_schema,
            processor=self._new_processor(config, throughput),
            throughput=throughput,
        )
        ctx.successful = job.progress.successful
        ctx.failed = job.progress.failed
        ctx.skipped = job.progress.skipped
        ctx.by_category = dict(job.progress.failed_items_by_category)

        try:
            total = await self._start(ctx, job.progress.total, retry_item_ids)
            ctx.processor.expected_total = total
            ctx.processor.processed = ctx.processed
            ctx.processor.successful = ctx.successful
            ctx.processor.failed = ctx.failed

            if ctx.source_match and not retry_mode:
                ctx.cache = self._new_cache()
                try:
                    await ctx.cache.build(self.target, config.target_app_id, target_match)
                except ItemBridgeError as e:
                    return await self._fail(job_id, "prefetch_failed", e, started, ctx)

            if retry_mode:
                paused = await self._run_retry(ctx, retry_failures, token)
            else:
                paused = await self._run_stream(ctx, checkpoint, total, token)
        except Exception as e:
            log_error(logger, e, context="migration_execution", job_id=job_id)
            return await self._fail(job_id, "migration_execution", e, started, ctx)
        finally:
            if ctx.cache is not None:
                ctx.cache.log_stats()
                ctx.cache.drop()

        status = JobStatus.PAUSED if paused else JobStatus.COMPLETED
        await self.state_store.update_progress(
            job_id,
            successful=ctx.successful,
            failed=ctx.failed,
            skipped=ctx.skipped,
            failed_items_by_category=ctx.by_category,
        )
        job = await self.state_store.update_status(job_id, status)

        logger.info(
            "migration_finished",
            job_id=job_id,
            status=status.value,
            successful=ctx.successful,
            failed=ctx.failed,
            skipped=ctx.skipped,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return self._result(job_id, status, job.progress.total, ctx, started)

    async def _start(
        self, ctx: _RunContext, known_total: int, retry_item_ids: list[int] | None
    ) -> int:
        config = ctx.config
        if retry_item_ids is not None:
            total = known_total or len(retry_item_ids)
        else:
            counts = await self.source.count_items(
                config.source_app_id, filters=build_platform_filters(config.filters) or None
            )
            total = counts["filtered"]
            if config.max_items is not None:
                total = min(total, config.max_items)

        def apply(job) -> None:
            job.status = JobStatus.IN_PROGRESS
            job.completed_at = None
            job.last_heartbeat = utcnow()
            job.progress.total = total
            job.progress.recalculate()

        await self.state_store.update(ctx.job_id, apply)
        logger.info("job_status_updated", job_id=ctx.job_id, status=JobStatus.IN_PROGRESS.value)
        return total

    async def _run_stream(
        self,
        ctx: _RunContext,
        checkpoint: BatchCheckpoint | None,
        total: int,
        token: PauseToken,
    ) -> bool:
        """Stream and migrate source pages.

        Returns:
            True if the run stopped early because a pause was requested
        """
        config = ctx.config
        offset = checkpoint.offset if checkpoint else 0
        batch_number = checkpoint.batch_number if checkpoint else 0
        remaining = None if config.max_items is None else max(config.max_items - offset, 0)
        if remaining == 0:
            return False

        lookup = self._cache_lookup(ctx.cache)
        pages = self.source.stream_items(
            config.source_app_id,
            batch_size=config.batch_size,
            offset=offset,
            filters=build_platform_filters(config.filters) or None,
        )
        try:
            async for page in pages:
                if remaining is not None:
                    page = page[:remaining]
                    remaining -= len(page)

                batch_number += 1
                page_started = utcnow()
                page_result = await self._run_page(ctx, page, lookup)
                offset += len(page)

                await self.state_store.save_checkpoint(
                    ctx.job_id,
                    BatchCheckpoint(
                        batch_number=batch_number,
                        offset=offset,
                        items_processed=page_result.successful + page_result.failed,
                        items_successful=page_result.successful,
                        items_failed=page_result.failed,
                        status=(
                            "failed"
                            if page_result.aborted
                            else "completed" if page_result.failed == 0 else "partial"
                        ),
                        started_at=page_started,
                        completed_at=utcnow(),
                    ),
                    successful=ctx.successful,
                    failed=ctx.failed,
                    skipped=ctx.skipped,
                    failed_items_by_category=ctx.by_category,
                    throughput=ctx.throughput.calculate(total, ctx.processed + ctx.skipped),
                )
                log_migration_progress(
                    logger,
                    ctx.job_id,
                    ctx.processed,
                    total,
                    successful=ctx.successful,
                    failed=ctx.failed,
                    skipped=ctx.skipped,
                )
                if ctx.abort_error is not None:
                    raise ctx.abort_error

                if remaining == 0:
                    break
                if await self._pause_requested(ctx.job_id, token):
                    logger.info("migration_pausing", job_id=ctx.job_id, offset=offset)
                    return True
        finally:
            await pages.aclose()
        return False

    async def _restore_failures(
        self, ctx: _RunContext, failures: list[FailedItemDetail], item_ids: list[int]
    ) -> None:
        """Put back the failure-log entries of retry items that were never reached."""
        wanted = set(item_ids)
        restored = [d for d in failures if d.source_item_id in wanted]
        if not restored:
            return
        ctx.failed += len(restored)
        for detail in restored:
            key = detail.error_category.value
            ctx.by_category[key] = ctx.by_category.get(key, 0) + 1
        await self.failure_log.append(ctx.job_id, restored)
        logger.info("retry_failures_restored", job_id=ctx.job_id, items=len(wanted))

    async def _run_retry(
        self, ctx: _RunContext, failures: list[FailedItemDetail], token: PauseToken
    ) -> bool:
        config = ctx.config
        item_ids = list(dict.fromkeys(d.source_item_id for d in failures if d.source_item_id))
        if config.mode == MigrationMode.CREATE:
            # Create-mode retries recreate items without duplicate matching
            ctx.source_match = None
        lookup = self._targeted_lookup(config, ctx.target_match)

        reached = 0
        try:
            for start in range(0, len(item_ids), config.batch_size):
                chunk = item_ids[start : start + config.batch_size]
                reached = start
                items = await self.source.fetch_items_by_ids(
                    chunk, concurrency=config.concurrency
                )

                fetched = {item["item_id"] for item in items}
                missing = [item_id for item_id in chunk if item_id not in fetched]
                if missing:
                    missing_failures = [
                        FailedItem(
                            error=f"Source item {item_id} no longer exists",
                            category=ErrorCategory.VALIDATION,
                            code="NOT_FOUND",
                            source_item_id=item_id,
                        )
                        for item_id in missing
                    ]
                    ctx.failed += len(missing_failures)
                    ctx.by_category[ErrorCategory.VALIDATION.value] = ctx.by_category.get(
                        ErrorCategory.VALIDATION.value, 0
                    ) + len(missing_failures)
                    await self.failure_log.append(
                        ctx.job_id, [failure.to_detail() for failure in missing_failures]
                    )

                await self._run_page(ctx, items, lookup)
                reached = start + len(chunk)
                if ctx.abort_error is not None:
                    raise ctx.abort_error
                await self.state_store.update_progress(
                    ctx.job_id,
                    successful=ctx.successful,
                    failed=ctx.failed,
                    skipped=ctx.skipped,
                    failed_items_by_category=ctx.by_category,
                )
                if reached < len(item_ids) and await self._pause_requested(ctx.job_id, token):
                    logger.info("retry_pausing", job_id=ctx.job_id, processed_ids=reached)
                    await self._restore_failures(ctx, failures, item_ids[reached:])
                    return True
        except Exception:
            await self._restore_failures(ctx, failures, item_ids[reached:])
            raise
        return False

    async def _fail(
        self,
        job_id: str,
        context: str,
        error: Exception,
        started: float,
        ctx: _RunContext | None = None,
    ) -> MigrationResult:
        logger.error("migration_failed", job_id=job_id, context=context, error=str(error))
        await self.state_store.add_error(job_id, context, str(error), type(error).__name__)
        if ctx is not None:
            await self.state_store.update_progress(
                job_id,
                successful=ctx.successful,
                failed=ctx.failed,
                skipped=ctx.skipped,
                failed_items_by_category=ctx.by_category,
            )
        job = await self.state_store.update_status(job_id, JobStatus.FAILED)
        result = MigrationResult(
            job_id=job_id,
            status=JobStatus.FAILED,
            total=job.progress.total,
            processed=job.progress.processed,
            successful=job.progress.successful,
            failed=job.progress.failed,
            skipped=job.progress.skipped,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        result.errors.append(str(error))
        return result

    @staticmethod
    def _result(
        job_id: str, status: JobStatus, total: int, ctx: _RunContext, started: float
    ) -> MigrationResult:
        return MigrationResult(
            job_id=job_id,
            status=status,
            total=total,
            processed=ctx.processed,
            successful=ctx.successful,
            failed=ctx.failed,
            skipped=ctx.skipped,
            duration_seconds=round(time.monotonic() - started, 2),
        )

    async def dry_run(self, config: ItemMigrationConfig) -> DryRunPreview:
        """Preview what ``execute`` would do without writing anything.

        Uses the same mapping, matching and duplicate handling as a real run.
        ``max_items`` bounds the number of source items previewed.

        Raises:
            MappingValidationError: If the mapping or match fields are invalid
            PrefetchError: If the duplicate cache cannot be built
        """
        mapping, source_match, target_match, _ = await self._prepare(config)

        cache = None
        if source_match:
            cache = self._new_cache()
            await cache.build(self.target, config.target_app_id, target_match)
        lookup = self._cache_lookup(cache)

        preview = DryRunPreview()
        pending_updates: list[tuple[int, int, dict[str, Any]]] = []
        scanned = 0
        pages = self.source.stream_items(
            config.source_app_id,
            batch_size=config.batch_size,
            filters=build_platform_filters(config.filters) or None,
        )
        try:
            async for page in pages:
                if config.max_items is not None:
                    page = page[: config.max_items - scanned]
                for item in page:
                    scanned += 1
                    decision = await self._decide_safely(
                        item, config, mapping, source_match, lookup
                    )
                    if decision.action == "create":
                        preview.would_create.append(
                            PreviewCreate(decision.source_item_id, decision.fields)
                        )
                    elif decision.action == "update":
                        pending_updates.append(
                            (decision.source_item_id, decision.target_item_id, decision.fields)
                        )
                    elif decision.action == "skip":
                        preview.would_skip.append(
                            PreviewSkip(
                                decision.source_item_id, decision.reason, decision.target_item_id
                            )
                        )
                    else:
                        category = (
                            ErrorCategory.DUPLICATE
                            if decision.action == "abort"
                            else decision.category
                        )
                        preview.would_fail.append(
                            PreviewFailure(decision.source_item_id, decision.reason, category)
                        )
                if config.max_items is not None and scanned >= config.max_items:
                    break
        finally:
            await pages.aclose()
            if cache is not None:
                cache.drop()

        if pending_updates:
            current_items = await self.target.fetch_items_by_ids(
                [target_id for _, target_id, _ in pending_updates],
                concurrency=config.concurrency,
            )
            current_by_id = {item["item_id"]: item for item in current_items}
            for source_id, target_id, fields in pending_updates:
                changes = _diff_fields(current_by_id.get(target_id, {}), fields)
                preview.would_update.append(
                    PreviewUpdate(
                        source_item_id=source_id,
                        target_item_id=target_id,
                        changes=changes,
                        change_count=sum(1 for change in changes if change.will_change),
                    )
                )

        preview.summary = {
            "total_source_items": scanned,
            "would_create": len(preview.would_create),
            "would_update": len(preview.would_update),
            "would_skip": len(preview.would_skip),
            "would_fail": len(preview.would_fail),
            "total_field_changes": sum(update.change_count for update in preview.would_update),
        }
        logger.info("dry_run_complete", source_app_id=config.source_app_id, **preview.summary)
        return preview

    async def validate_field_mapping(
        self,
        config: ItemMigrationConfig,
        sample_size: int = 3,
        mapping: dict[str, str] | None = None,
    ) -> MappingValidationResult:
        """Create a few real items with the mapping, then delete them again.

        Args:
            config: Migration configuration
            sample_size: Number of source items to try
            mapping: Resolved mapping; resolved from the schemas when omitted

        Returns:
            MappingValidationResult; ``valid`` is False when any create failed

        Raises:
            MappingValidationError: If a test item cannot be deleted again
        """
        if mapping is None:
            mapping, _, _, _ = await self._prepare(config)

        response = await self.source.filter_items(
            config.source_app_id,
            limit=sample_size,
            offset=0,
            filters=build_platform_filters(config.filters) or None,
        )
        samples = response["items"][:sample_size]
        result = MappingValidationResult(valid=True, tested=len(samples))

        created: list[int] = []
        for item in samples:
            fields = map_item_fields(item, mapping)
            try:
                response = await self.target.create_item(
                    config.target_app_id,
                    fields,
                    external_id=f"{VALIDATION_EXTERNAL_ID_PREFIX}{item['item_id']}",
                    silent=True,
                    hook=False,
                )
            except ItemBridgeError as e:
                result.valid = False
                result.errors.append(f"Source item {item['item_id']}: {e}")
                continue
            if response.get("item_id"):
                created.append(response["item_id"])
        result.created = len(created)

        for item_id in created:
            try:
                await self.target.delete_item(item_id)
            except ItemBridgeError as e:
                raise MappingValidationError(
                    f"Could not delete validation item {item_id} from app "
                    f"{config.target_app_id}; delete it manually: {e}"
                ) from e
            result.deleted += 1

        logger.info(
            "field_mapping_validated",
            source_app_id=config.source_app_id,
            target_app_id=config.target_app_id,
            valid=result.valid,
            tested=result.tested,
            created=result.created,
            deleted=result.deleted,
        )
        return result


def _diff_fields(current_item: dict[str, Any], new_fields: dict[str, Any]) -> list[FieldChange]:
    changes = []
    for external_id, new_value in new_fields.items():
        field_data = find_item_field(current_item, external_id)
        current_value = extract_field_value(field_data) if field_data else None
        changes.append(
            FieldChange(
                field=external_id,
                current_value=current_value,
                new_value=new_value,
                will_change=current_value != new_value,
            )
        )
    return changes
