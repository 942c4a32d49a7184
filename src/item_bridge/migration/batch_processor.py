"""Batched, rate-limit aware item writes.

The processor splits a list of write requests into fixed-size batches and
submits each batch with bounded concurrency. Batches run strictly in order.
Before each batch the shared ``RateLimitTracker`` is consulted; when the
remaining quota is below the pause threshold the processor waits for the
quota reset. A batch that ran into rate-limit failures also triggers a wait
before the next batch.

Individual item failures are retried according to the error classifier and
otherwise recorded in the returned ``BatchResult``; they never abort the
run. Progress is published as ``ProgressEvent`` objects on an optional
bounded ``asyncio.Queue``.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from item_bridge.client.exceptions import FieldNotFoundError, ItemBridgeError
from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.migration.error_classifier import (
    calculate_retry_delay,
    classify_error,
    is_field_not_found,
    is_rate_limit_failure,
    should_retry,
)
from item_bridge.migration.models import (
    BatchResult,
    CreateRequest,
    ErrorCategory,
    FailedItem,
    ProgressEvent,
    ProgressEventKind,
    UpdateRequest,
    utcnow,
)
from item_bridge.migration.throughput import ThroughputCalculator
from item_bridge.utils.logging import get_logger, log_error

logger = get_logger(__name__)

WriteRequest = CreateRequest | UpdateRequest


class _ItemOutcome:
    __slots__ = ("request", "response", "failure", "error")

    def __init__(
        self,
        request: WriteRequest,
        response: Any = None,
        failure: FailedItem | None = None,
        error: BaseException | None = None,
    ):
        self.request = request
        self.response = response
        self.failure = failure
        self.error = error


class BatchProcessor:
    """Submits create/update requests to one target app in ordered batches."""

    def __init__(
        self,
        client: Any,
        app_id: int,
        tracker: RateLimitTracker,
        batch_size: int = 500,
        concurrency: int = 5,
        max_retries: int = 3,
        stop_on_error: bool = False,
        silent: bool = True,
        pause_threshold: int = 10,
        max_rate_limit_wait: float = 3600,
        progress_queue: asyncio.Queue | None = None,
        throughput: ThroughputCalculator | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the processor.

        Args:
            client: Platform client for the target instance
            app_id: Target app id
            tracker: Shared rate-limit tracker
            batch_size: Requests per batch
            concurrency: Maximum in-flight requests within a batch
            max_retries: Retry ceiling for transient item failures
            stop_on_error: Stop after the first batch with an unexpected error;
                the result is flagged ``aborted``
            silent: Suppress platform notifications for written items
            pause_threshold: Wait for the quota reset below this many requests
            max_rate_limit_wait: Upper bound for one quota wait (seconds)
            progress_queue: Optional queue receiving ProgressEvent objects
            throughput: Optional calculator fed with batch timings
            sleep: Coroutine used for retry delays
        """
        self.client = client
        self.app_id = app_id
        self.tracker = tracker
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.stop_on_error = stop_on_error
        self.silent = silent
        self.pause_threshold = pause_threshold
        self.max_rate_limit_wait = max_rate_limit_wait
        self.progress_queue = progress_queue
        self.throughput = throughput
        self._sleep = sleep

        # Running totals across every call on this processor
        self.expected_total = 0
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self._batch_counter = 0

    async def process_create(self, items: Sequence[CreateRequest]) -> BatchResult:
        """Create ``items`` in the target app.

        Raises:
            FieldNotFoundError: If a write referenced a field the app no longer has
        """
        return await self._process(list(items), "create", self._create_one)

    async def process_update(self, items: Sequence[UpdateRequest]) -> BatchResult:
        """Apply ``items`` to existing target items.

        Raises:
            FieldNotFoundError: If a write referenced a field the app no longer has
        """
        return await self._process(list(items), "update", self._update_one)

    async def _create_one(self, request: CreateRequest) -> Any:
        return await self.client.create_item(
            self.app_id, request.fields, external_id=request.external_id, silent=self.silent
        )

    async def _update_one(self, request: UpdateRequest) -> Any:
        return await self.client.update_item(request.item_id, request.fields, silent=self.silent)

    def _publish(self, kind: ProgressEventKind, **fields: Any) -> None:
        if self.progress_queue is None:
            return
        event = ProgressEvent(
            kind=kind,
            processed=self.processed,
            successful=self.successful,
            failed=self.failed,
            total=self.expected_total,
            **fields,
        )
        try:
            self.progress_queue.put_nowait(event)
        except asyncio.QueueFull:
            # Progress is a snapshot stream; the oldest event is the least useful
            self.progress_queue.get_nowait()
            self.progress_queue.put_nowait(event)

    async def _wait_for_quota(self, reason: str, batch_number: int) -> float:
        wait_seconds = min(self.tracker.time_until_reset(), self.max_rate_limit_wait)
        logger.warning(
            "rate_limit_pause",
            app_id=self.app_id,
            reason=reason,
            batch_number=batch_number,
            remaining=self.tracker.remaining_quota(),
            limit=self.tracker.limit(),
            wait_seconds=round(wait_seconds, 1),
        )
        self._publish(
            ProgressEventKind.RATE_LIMIT_PAUSED,
            batch_number=batch_number,
            reason=reason,
            wait_seconds=wait_seconds,
        )

        waited = await self.tracker.wait_for_reset(self.max_rate_limit_wait)

        logger.info("rate_limit_resume", app_id=self.app_id, batch_number=batch_number)
        self._publish(ProgressEventKind.RATE_LIMIT_RESUMED, batch_number=batch_number)
        if self.throughput is not None:
            self.throughput.record_rate_limit_pause(waited * 1000)
        return waited

    def _failed_item(
        self,
        request: WriteRequest,
        error: BaseException,
        attempts: int,
        first_attempt_at: Any = None,
    ) -> FailedItem:
        classified = classify_error(error)
        return FailedItem(
            error=str(error),
            category=classified.category,
            code=classified.code,
            source_item_id=request.source_item_id,
            target_item_id=getattr(request, "item_id", None),
            attempt_count=attempts,
            first_attempt_at=first_attempt_at or utcnow(),
        )

    async def _submit(
        self, request: WriteRequest, submit: Callable[[Any], Awaitable[Any]]
    ) -> _ItemOutcome:
        first_attempt_at = utcnow()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await submit(request)
                return _ItemOutcome(request, response=response)
            except ItemBridgeError as e:
                classified = classify_error(e)
                if is_field_not_found(e) or not should_retry(
                    classified.category, attempt - 1, self.max_retries
                ):
                    return _ItemOutcome(
                        request,
                        failure=self._failed_item(request, e, attempt, first_attempt_at),
                        error=e,
                    )

                delay_ms = calculate_retry_delay(attempt - 1, classified.retry_delay_ms or 1000)
                logger.debug(
                    "item_write_retry",
                    app_id=self.app_id,
                    source_item_id=request.source_item_id,
                    category=classified.category.value,
                    attempt=attempt,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000)

    async def _run_batch(
        self, batch: list[WriteRequest], submit: Callable[[Any], Awaitable[Any]]
    ) -> list[_ItemOutcome]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(request: WriteRequest) -> _ItemOutcome:
            async with semaphore:
                return await self._submit(request, submit)

        results = await asyncio.gather(
            *(bounded(request) for request in batch), return_exceptions=True
        )

        outcomes = []
        for request, result in zip(batch, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failure = self._failed_item(request, result, 1)
                outcomes.append(_ItemOutcome(request, failure=failure, error=result))
            else:
                outcomes.append(result)
        return outcomes

    async def _process(
        self,
        items: list[WriteRequest],
        operation: str,
        submit: Callable[[Any], Awaitable[Any]],
    ) -> BatchResult:
        result = BatchResult(total=len(items))
        if not items:
            return result

        total_batches = (len(items) + self.batch_size - 1) // self.batch_size
        logger.info(
            "batch_processing_started",
            app_id=self.app_id,
            operation=operation,
            items=len(items),
            batches=total_batches,
            batch_size=self.batch_size,
            concurrency=self.concurrency,
        )

        for index in range(total_batches):
            start = index * self.batch_size
            batch = items[start : start + self.batch_size]
            is_last = index == total_batches - 1
            self._batch_counter += 1
            batch_number = self._batch_counter

            if self.tracker.should_pause(self.pause_threshold):
                await self._wait_for_quota("pre_batch_quota", batch_number)

            self._publish(
                ProgressEventKind.BATCH_STARTED,
                batch_number=batch_number,
                total_batches=total_batches,
            )
            started = self.throughput.start_batch() if self.throughput else 0.0

            try:
                outcomes = await self._run_batch(batch, submit)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error(
                    logger,
                    e,
                    context="batch_processing",
                    app_id=self.app_id,
                    operation=operation,
                    batch_number=batch_number,
                )
                for request in batch:
                    result.record_failure(self._failed_item(request, e, 1))
                self.processed += len(batch)
                self.failed += len(batch)
                if self.stop_on_error:
                    result.aborted = True
                    result.unsubmitted = items[start + len(batch) :]
                    logger.warning(
                        "batch_processing_aborted",
                        app_id=self.app_id,
                        batch_number=batch_number,
                        unsubmitted=len(result.unsubmitted),
                    )
                    break
                continue

            field_errors = [
                outcome
                for outcome in outcomes
                if outcome.error is not None and is_field_not_found(outcome.error)
            ]
            settled = [outcome for outcome in outcomes if outcome not in field_errors]

            batch_successful = 0
            batch_failed = 0
            unexpected: BaseException | None = None
            for outcome in settled:
                if outcome.failure is None:
                    batch_successful += 1
                    item_id = (outcome.response or {}).get("item_id")
                    if item_id:
                        result.created_item_ids.append(item_id)
                    continue

                batch_failed += 1
                result.record_failure(outcome.failure)
                if not isinstance(outcome.error, ItemBridgeError):
                    unexpected = outcome.error
                logger.debug(
                    "item_write_failed",
                    app_id=self.app_id,
                    operation=operation,
                    source_item_id=outcome.failure.source_item_id,
                    target_item_id=outcome.failure.target_item_id,
                    category=outcome.failure.category.value,
                    error=outcome.failure.error,
                )

            result.successful += batch_successful
            self.processed += batch_successful + batch_failed
            self.successful += batch_successful
            self.failed += batch_failed

            if self.throughput is not None:
                self.throughput.complete_batch(
                    batch_number, started, batch_successful + batch_failed
                )

            self._publish(
                ProgressEventKind.BATCH_COMPLETED,
                batch_number=batch_number,
                total_batches=total_batches,
            )
            self._publish(ProgressEventKind.PROGRESS, batch_number=batch_number)
            logger.info(
                "batch_completed",
                app_id=self.app_id,
                operation=operation,
                batch_number=batch_number,
                successful=batch_successful,
                failed=batch_failed,
            )

            if field_errors:
                first = field_errors[0].error
                error = FieldNotFoundError.from_api_error(first)
                error.batch_offset = start
                error.partial_result = result
                error.pending = [outcome.request for outcome in field_errors] + items[
                    start + len(batch) :
                ]
                logger.warning(
                    "field_not_found_detected",
                    app_id=self.app_id,
                    operation=operation,
                    batch_number=batch_number,
                    affected=len(field_errors),
                    pending=len(error.pending),
                    error=str(first),
                )
                raise error

            if unexpected is not None:
                logger.error(
                    "item_write_unexpected_error",
                    app_id=self.app_id,
                    batch_number=batch_number,
                    error_type=type(unexpected).__name__,
                    error=str(unexpected),
                )
                if self.stop_on_error:
                    result.aborted = True
                    result.unsubmitted = items[start + len(batch) :]
                    logger.warning(
                        "batch_processing_aborted",
                        app_id=self.app_id,
                        batch_number=batch_number,
                        unsubmitted=len(result.unsubmitted),
                    )
                    break

            rate_limited = any(
                outcome.failure is not None
                and (
                    outcome.failure.category == ErrorCategory.RATE_LIMIT
                    or is_rate_limit_failure(outcome.error or outcome.failure.error)
                )
                for outcome in settled
            )
            if rate_limited and not is_last and self.tracker.time_until_reset() > 0:
                await self._wait_for_quota("batch_failures", batch_number)

        logger.info(
            "batch_processing_complete",
            app_id=self.app_id,
            operation=operation,
            successful=result.successful,
            failed=result.failed,
            total=result.total,
        )
        return result
