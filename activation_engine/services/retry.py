"""
Retry policy and backoff execution for remote platform calls.

Error-aware retry logic:
- Auth errors and other permanent 4xx rejections -> fail immediately
- 429 rate limit -> retry, honouring Retry-After when the platform sends it
- 5xx, timeouts, connection errors -> retry with exponential backoff
- Unexpected (non-platform) errors -> retry
- After max_retries -> give up, last error is returned to the caller

Backoff formula: base_delay * (2^attempt), capped at max_delay, with
optional +/- jitter.

Only remote calls go through here; local validation and hashing never do.
Each call to retry_async() has its own budget, so concurrent lifecycles do
not share retry state.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from activation_engine.exceptions import (
    ActivationError,
    PlatformAPIError,
    PlatformAuthenticationError,
    PlatformRateLimitError,
    PlatformConnectionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration constants
MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0
JITTER_FACTOR = 0.0


class ErrorCategory(str, Enum):
    """Error classification for retry decisions."""
    AUTH_ERROR = "auth_error"  # 401, 403 - no retry
    PERMANENT = "permanent"  # other 4xx / platform rejection - no retry
    RATE_LIMIT = "rate_limit"  # 429 - retry with Retry-After
    SERVER_ERROR = "server_error"  # 5xx - retry with backoff
    CONNECTION = "connection"  # Network errors, timeouts - retry
    UNKNOWN = "unknown"  # Unexpected errors - retry


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.CONNECTION,
    ErrorCategory.UNKNOWN,
})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Maximum delay cap
        jitter_factor: Random jitter factor (0.25 = +/- 25%)
    """
    max_retries: int = MAX_RETRIES
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=int(data.get("max_retries", MAX_RETRIES)),
            base_delay_seconds=float(data.get("base_delay_seconds", BASE_DELAY_SECONDS)),
            max_delay_seconds=float(data.get("max_delay_seconds", MAX_DELAY_SECONDS)),
            jitter_factor=float(data.get("jitter_factor", JITTER_FACTOR)),
        )


@dataclass
class RetryOutcome(Generic[T]):
    """
    Final result of a retried operation.

    Exactly one of value/error is meaningful: `ok` tells which.
    `errors` holds every failure seen, oldest first.
    """
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    errors: List[BaseException] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the last error."""
        if self.error is not None:
            raise self.error
        return self.value


def categorize_error(error: BaseException) -> ErrorCategory:
    """
    Categorize an error for retry decisions.

    Args:
        error: Exception raised by the operation

    Returns:
        ErrorCategory for the error
    """
    if isinstance(error, PlatformAuthenticationError):
        return ErrorCategory.AUTH_ERROR
    if isinstance(error, PlatformRateLimitError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, PlatformConnectionError):
        return ErrorCategory.CONNECTION
    if isinstance(error, PlatformAPIError):
        status_code = error.status_code
        if status_code in (401, 403):
            return ErrorCategory.AUTH_ERROR
        if status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if status_code is not None and 500 <= status_code < 600:
            return ErrorCategory.SERVER_ERROR
        if error.is_retryable:
            return ErrorCategory.SERVER_ERROR
        return ErrorCategory.PERMANENT
    if isinstance(error, ActivationError):
        # Local rejections do not change on retry
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy = RetryPolicy(),
    retry_after: Optional[float] = None,
) -> float:
    """
    Calculate backoff delay with exponential growth and optional jitter.

    Formula: min(base * 2^attempt + jitter, max_delay)

    Args:
        attempt: Number of the attempt that just failed (0-indexed)
        policy: Retry policy configuration
        retry_after: Server-specified retry delay (overrides calculation)

    Returns:
        Delay in seconds before next attempt
    """
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), policy.max_delay_seconds)

    delay = policy.base_delay_seconds * (2 ** attempt)

    if policy.jitter_factor:
        jitter_range = delay * policy.jitter_factor
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(min(delay, policy.max_delay_seconds), 0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    operation_name: str = "operation",
    log_extra: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Run `operation` with bounded retries and exponential backoff.

    Never raises for operation failures: the outcome carries either the
    value or the last error. Cancellation propagates unchanged.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy configuration
        operation_name: Name used in log records
        log_extra: Extra structured context for log records
        sleep: Coroutine used for backoff delays

    Returns:
        RetryOutcome with the value or the last error
    """
    outcome: RetryOutcome[T] = RetryOutcome()
    extra = dict(log_extra or {})
    extra["operation"] = operation_name

    for attempt in range(policy.max_retries + 1):
        outcome.attempts = attempt + 1
        try:
            outcome.value = await operation()
            outcome.error = None
            return outcome
        except Exception as e:
            outcome.error = e
            outcome.errors.append(e)

        category = categorize_error(outcome.error)
        if category not in RETRYABLE_CATEGORIES:
            logger.warning(
                "Remote call failed without retry",
                extra={**extra, "attempt": attempt + 1, "error_category": category.value,
                       "error": str(outcome.error)},
            )
            return outcome

        if attempt >= policy.max_retries:
            logger.error(
                "Remote call failed after max retries",
                extra={**extra, "attempts": attempt + 1, "error_category": category.value,
                       "error": str(outcome.error)},
            )
            return outcome

        delay = calculate_backoff(
            attempt,
            policy,
            retry_after=getattr(outcome.error, "retry_after", None),
        )
        logger.info(
            "Remote call failed, retrying",
            extra={**extra, "attempt": attempt + 1, "max_retries": policy.max_retries,
                   "delay_seconds": delay, "error_category": category.value,
                   "error": str(outcome.error)},
        )
        await sleep(delay)

    return outcome
