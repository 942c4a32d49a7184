"""Rolling throughput and ETA estimation."""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from item_bridge.migration.models import ThroughputMetrics, utcnow

ROLLING_WINDOW_SIZE = 10

# ETA padding applied once the run has hit the rate limit
RATE_LIMIT_ETA_BUFFER = 1.1


@dataclass
class BatchTiming:
    batch_number: int
    started_at: float
    ended_at: float
    items_processed: int

    @property
    def duration(self) -> float:
        return max(self.ended_at - self.started_at, 0.0)


class ThroughputCalculator:
    """Computes throughput over the last ``ROLLING_WINDOW_SIZE`` batches."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._timings: deque[BatchTiming] = deque(maxlen=ROLLING_WINDOW_SIZE)
        self._started_at = clock()
        self.rate_limit_pauses = 0
        self.total_rate_limit_delay_ms = 0.0

    def start_batch(self) -> float:
        return self._clock()

    def complete_batch(
        self,
        batch_number: int,
        started_at: float,
        items_processed: int,
        rate_limit_delay_ms: float = 0.0,
    ) -> None:
        """Record a finished batch.

        Args:
            batch_number: Batch sequence number
            started_at: Value returned by ``start_batch``
            items_processed: Items written (successfully or not) in the batch
            rate_limit_delay_ms: Time spent waiting on the rate limit, if any
        """
        self._timings.append(
            BatchTiming(batch_number, started_at, self._clock(), items_processed)
        )
        if rate_limit_delay_ms > 0:
            self.record_rate_limit_pause(rate_limit_delay_ms)

    def record_rate_limit_pause(self, delay_ms: float) -> None:
        self.rate_limit_pauses += 1
        self.total_rate_limit_delay_ms += delay_ms

    def calculate(self, total_items: int, processed_items: int) -> ThroughputMetrics:
        """Compute current metrics and the estimated completion time.

        Args:
            total_items: Items the run is expected to process
            processed_items: Items processed so far

        Returns:
            ThroughputMetrics snapshot
        """
        elapsed = self._clock() - self._started_at
        items_per_second = processed_items / elapsed if elapsed > 0 else 0.0
        batches_per_minute = 0.0
        avg_batch_ms = 0.0

        if self._timings:
            recent_items = sum(timing.items_processed for timing in self._timings)
            recent_seconds = sum(timing.duration for timing in self._timings)
            if recent_seconds > 0:
                items_per_second = recent_items / recent_seconds
                batches_per_minute = len(self._timings) / (recent_seconds / 60)
            avg_batch_ms = recent_seconds * 1000 / len(self._timings)

        eta_seconds = None
        estimated_completion_at = None
        remaining = total_items - processed_items
        if remaining > 0 and items_per_second > 0:
            eta_seconds = remaining / items_per_second
            if self.rate_limit_pauses > 0:
                eta_seconds *= RATE_LIMIT_ETA_BUFFER
            estimated_completion_at = utcnow() + timedelta(seconds=eta_seconds)

        return ThroughputMetrics(
            items_per_second=round(items_per_second, 2),
            batches_per_minute=round(batches_per_minute, 2),
            avg_batch_duration_ms=round(avg_batch_ms),
            eta_seconds=round(eta_seconds, 1) if eta_seconds is not None else None,
            estimated_completion_at=estimated_completion_at,
            rate_limit_pauses=self.rate_limit_pauses,
            total_rate_limit_delay_ms=round(self.total_rate_limit_delay_ms),
        )

    def reset(self) -> None:
        self._timings.clear()
        self._started_at = self._clock()
        self.rate_limit_pauses = 0
        self.total_rate_limit_delay_ms = 0.0
