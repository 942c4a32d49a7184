"""Shared rate-limit tracker for platform API quota.

The platform reports its hourly quota on every response through the
``X-Rate-Limit-Limit``, ``X-Rate-Limit-Remaining`` and ``X-Rate-Limit-Reset``
headers. One tracker is created per process and handed to every client and
batch processor that talks to the same account.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitState:
    """Snapshot of the last quota reported by the platform."""

    limit: int
    remaining: int
    reset_at: datetime
    updated_at: datetime


def _parse_reset(reset: str | datetime) -> datetime | None:
    if isinstance(reset, datetime):
        return reset if reset.tzinfo else reset.replace(tzinfo=UTC)
    if not isinstance(reset, str) or not reset.strip():
        return None
    try:
        parsed = datetime.fromisoformat(reset.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _valid_count(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value >= 0
    )


class RateLimitTracker:
    """Tracks remaining request quota and the time the quota resets.

    Updates are serialized through an ``asyncio.Lock``; readers see the
    last published immutable ``RateLimitState`` snapshot, so concurrent
    batch submissions never observe a half-written state.
    """

    def __init__(self) -> None:
        self._state: RateLimitState | None = None
        self._lock = asyncio.Lock()

    async def update_from_headers(self, limit: int, remaining: int, reset: str | datetime) -> None:
        """Record quota reported by a response.

        Invalid values are logged and ignored.

        Args:
            limit: Value of the X-Rate-Limit-Limit header
            remaining: Value of the X-Rate-Limit-Remaining header
            reset: Value of the X-Rate-Limit-Reset header (ISO 8601 timestamp)
        """
        if not _valid_count(limit):
            logger.warning("rate_limit_invalid_limit", limit=limit)
            return
        if not _valid_count(remaining):
            logger.warning("rate_limit_invalid_remaining", remaining=remaining)
            return
        reset_at = _parse_reset(reset)
        if reset_at is None:
            logger.warning("rate_limit_invalid_reset", reset=str(reset))
            return

        async with self._lock:
            previous = self._state
            self._state = RateLimitState(
                limit=int(limit),
                remaining=int(remaining),
                reset_at=reset_at,
                updated_at=datetime.now(UTC),
            )

        if previous is None or remaining < previous.remaining:
            logger.debug(
                "rate_limit_quota_updated",
                limit=int(limit),
                remaining=int(remaining),
                reset=reset_at.isoformat(),
            )
        if 0 < remaining < 20:
            logger.warning(
                "rate_limit_approaching",
                remaining=int(remaining),
                limit=int(limit),
                percent_remaining=round(remaining / limit * 100) if limit else 0,
            )

    def state(self) -> RateLimitState | None:
        """Return the current quota snapshot, if any."""
        return self._state

    def has_state(self) -> bool:
        return self._state is not None

    def remaining_quota(self) -> int | None:
        state = self._state
        return state.remaining if state else None

    def limit(self) -> int | None:
        state = self._state
        return state.limit if state else None

    def should_pause(self, threshold: int = 10) -> bool:
        """Check whether remaining quota is below ``threshold``.

        Without any reported quota there is nothing to protect, so this
        returns False.
        """
        state = self._state
        if state is None:
            return False
        return state.remaining < threshold

    def time_until_reset(self) -> float:
        """Seconds until the quota resets, floored at zero."""
        state = self._state
        if state is None:
            return 0.0
        return max(0.0, (state.reset_at - datetime.now(UTC)).total_seconds())

    async def wait_for_reset(self, max_wait: float = 3600) -> float:
        """Sleep until the quota resets.

        Args:
            max_wait: Upper bound for the sleep in seconds

        Returns:
            Seconds actually waited
        """
        wait_time = min(self.time_until_reset(), max_wait)
        if wait_time <= 0:
            logger.info("rate_limit_already_reset")
            return 0.0

        resume_at = datetime.now(UTC) + timedelta(seconds=wait_time)
        logger.info(
            "rate_limit_waiting_for_reset",
            wait_seconds=round(wait_time, 1),
            resume_at=resume_at.isoformat(),
            remaining=self.remaining_quota(),
        )
        await asyncio.sleep(wait_time)
        logger.info("rate_limit_wait_complete")
        return wait_time

    def status(self) -> str:
        """Human-readable quota summary."""
        state = self._state
        if state is None:
            return "No rate limit data"

        percent_used = 0
        if state.limit:
            percent_used = round((state.limit - state.remaining) / state.limit * 100)
        minutes = round(self.time_until_reset() / 60)
        return (
            f"{state.remaining}/{state.limit} requests remaining "
            f"({percent_used}% used), resets in {minutes}min"
        )

    def reset(self) -> None:
        """Forget all quota information."""
        self._state = None
        logger.debug("rate_limit_tracker_reset")
