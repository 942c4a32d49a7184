"""Per-item failure classification and retry policy.

Categories and their retry behavior:

- network: transient connectivity or server trouble, retried
- rate_limit: quota exhausted, retried after a longer delay
- validation: bad data or missing resources, never retried
- permission: authorization problems, never retried
- duplicate: the target already holds the item, never retried
- unknown: anything else, retried once
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any

from item_bridge.client.exceptions import APIError, FieldNotFoundError, NetworkError, RateLimitError
from item_bridge.migration.models import ErrorCategory

NON_RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.VALIDATION, ErrorCategory.PERMISSION, ErrorCategory.DUPLICATE}
)

# Categories an operator retry is likely to fix
OPERATOR_RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT, ErrorCategory.UNKNOWN}
)

CATEGORY_LABELS = {
    ErrorCategory.NETWORK: "Network Error",
    ErrorCategory.RATE_LIMIT: "Rate Limit",
    ErrorCategory.VALIDATION: "Validation Error",
    ErrorCategory.PERMISSION: "Permission Denied",
    ErrorCategory.DUPLICATE: "Duplicate Item",
    ErrorCategory.UNKNOWN: "Unknown Error",
}


@dataclass(frozen=True)
class ClassifiedError:
    """A failure mapped onto the error taxonomy."""

    category: ErrorCategory
    message: str
    should_retry: bool
    code: str
    retry_delay_ms: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _classify_status(error: APIError) -> ClassifiedError | None:
    status = error.status_code
    details = {
        "status_code": status,
        "error_code": error.error_code,
        "error_detail": error.error_detail,
    }

    if isinstance(error, RateLimitError) or status in (420, 429):
        return ClassifiedError(
            ErrorCategory.RATE_LIMIT,
            "API rate limit exceeded",
            True,
            "RATE_LIMIT_EXCEEDED",
            5000,
            details,
        )
    if status is None:
        return None
    if 500 <= status < 600:
        return ClassifiedError(
            ErrorCategory.NETWORK, f"Server error: {status}", True, "SERVER_ERROR", 2000, details
        )
    if status in (401, 403):
        return ClassifiedError(
            ErrorCategory.PERMISSION, "Permission denied", False, "PERMISSION_DENIED", None, details
        )
    if status == 409:
        return ClassifiedError(
            ErrorCategory.DUPLICATE,
            "Duplicate item detected",
            False,
            "DUPLICATE_ITEM",
            None,
            details,
        )
    if status == 400:
        detail = (error.error_detail or "").lower()
        if error.error_code == "duplicate" or "duplicate" in detail or "already exists" in detail:
            return ClassifiedError(
                ErrorCategory.DUPLICATE,
                "Duplicate item detected",
                False,
                "DUPLICATE_ITEM",
                None,
                details,
            )
        return ClassifiedError(
            ErrorCategory.VALIDATION,
            error.error_detail or error.message or "Invalid data",
            False,
            "VALIDATION_ERROR",
            None,
            details,
        )
    if status == 404:
        return ClassifiedError(
            ErrorCategory.VALIDATION, "Resource not found", False, "NOT_FOUND", None, details
        )
    return None


def _classify_message(message: str) -> ClassifiedError | None:
    text = message.lower()

    if any(
        keyword in text
        for keyword in ("network", "timeout", "econnrefused", "econnreset", "fetch failed")
    ):
        return ClassifiedError(ErrorCategory.NETWORK, message, True, "NETWORK_ERROR", 2000)
    if "rate limit" in text or "too many requests" in text:
        return ClassifiedError(ErrorCategory.RATE_LIMIT, message, True, "RATE_LIMIT", 5000)
    if "duplicate" in text or "already exists" in text:
        return ClassifiedError(ErrorCategory.DUPLICATE, message, False, "DUPLICATE")
    if any(keyword in text for keyword in ("invalid", "required", "validation")):
        return ClassifiedError(ErrorCategory.VALIDATION, message, False, "VALIDATION_ERROR")
    if any(keyword in text for keyword in ("permission", "unauthorized", "forbidden")):
        return ClassifiedError(ErrorCategory.PERMISSION, message, False, "PERMISSION_ERROR")
    return None


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Map a failure onto the error taxonomy.

    HTTP status codes take precedence; errors without a usable status
    fall back to keyword matching on the message.

    Args:
        error: Exception (or bare message) to classify

    Returns:
        ClassifiedError with category, retry recommendation and delay
    """
    if isinstance(error, APIError):
        classified = _classify_status(error)
        if classified is not None:
            return classified

    if isinstance(error, NetworkError | asyncio.TimeoutError | ConnectionError):
        return ClassifiedError(ErrorCategory.NETWORK, str(error), True, "NETWORK_ERROR", 2000)

    message = error if isinstance(error, str) else str(error)
    classified = _classify_message(message)
    if classified is not None:
        return classified

    return ClassifiedError(ErrorCategory.UNKNOWN, message, True, "UNKNOWN_ERROR", 1000)


def calculate_retry_delay(
    attempt: int, base_delay_ms: int = 1000, max_delay_ms: int = 30000
) -> int:
    """Exponential backoff with +/-20% jitter.

    Args:
        attempt: Zero-based attempt number
        base_delay_ms: Delay for the first attempt
        max_delay_ms: Upper bound before jitter

    Returns:
        Delay in milliseconds, never negative
    """
    capped = min(base_delay_ms * (2**attempt), max_delay_ms)
    jitter = capped * 0.2 * (random.random() * 2 - 1)
    return max(round(capped + jitter), 0)


def should_retry(category: ErrorCategory, attempt_count: int, max_retries: int = 3) -> bool:
    """Decide whether a failed item gets another attempt.

    Args:
        category: Error category of the last failure
        attempt_count: Attempts already made
        max_retries: Attempt ceiling

    Returns:
        True if the item should be retried
    """
    if category in NON_RETRYABLE_CATEGORIES:
        return False
    if attempt_count >= max_retries:
        return False
    if category in (ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT):
        return True
    return category == ErrorCategory.UNKNOWN and attempt_count < 1


def category_label(category: ErrorCategory) -> str:
    return CATEGORY_LABELS.get(category, "Unknown Error")


def is_rate_limit_failure(error: BaseException | str) -> bool:
    """Check for a 420/429 style rate-limit signature."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, APIError) and error.status_code in (420, 429):
        return True
    text = str(error).lower()
    return "rate limit" in text or "429" in text or "420" in text


def is_field_not_found(error: BaseException) -> bool:
    """Check whether a write failed because a mapped field no longer exists."""
    if isinstance(error, FieldNotFoundError):
        return True
    if not isinstance(error, APIError):
        return False

    code = (error.error_code or "").lower()
    message = (error.message or "").lower()
    detail = (error.error_detail or "").lower()

    if "invalid_field" in code or "field_not_found" in code:
        return True
    if "field" in message and "not found" in message:
        return True
    if "invalid field" in message or "invalid field" in detail:
        return True
    return "field" in detail and ("deleted" in detail or "not found" in detail)
