"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to make intelligent retry decisions:
- Transient errors: retry with linear or exponential backoff
- Permanent errors: fail immediately (no retry)
- Duplicates: never retried, the write already happened
- Cancellation: never caught, always propagates
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from functools import wraps

from core.errors.exceptions import (
    PipelineError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory

logger = logging.getLogger(__name__)


class BackoffStrategy(StrEnum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def _extract_error_category(wrapped: Exception) -> str:
    """Return a string error category from a wrapped exception."""
    if isinstance(wrapped, PipelineError):
        cat = wrapped.category
    else:
        cat = classify_exception(wrapped)
    return cat.value if hasattr(cat, "value") else str(cat)


def _log_retry_failure(
    func_name: str,
    wrapped: Exception,
    e: Exception,
    error_category: str,
    config: "RetryConfig",
) -> None:
    """Log permanent-error or max-retries-exhausted."""
    error_type = type(wrapped).__name__
    if isinstance(wrapped, PipelineError) and not wrapped.is_retryable:
        logger.warning(
            "Permanent error for %s, not retrying: %s",
            func_name,
            str(e)[:200],
            extra={
                "operation": func_name,
                "error_type": error_type,
                "error_category": error_category,
                "error_message": str(e)[:200],
            },
        )
        return

    logger.error(
        "Max retries exhausted for %s: %s",
        func_name,
        str(e)[:200],
        extra={
            "operation": func_name,
            "error_type": error_type,
            "error_category": error_category,
            "max_attempts": config.max_attempts,
            "error_message": str(e)[:200],
        },
    )


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attempts are counted from 1. ``get_delay(attempt)`` returns the pause
    taken after attempt ``attempt`` failed and before the next one starts.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    # Equal jitter spreads retries from many workers apart
    jitter: bool = True

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        self.backoff = BackoffStrategy(self.backoff)
        # bool('false') would be True, so only coerce non-bools
        self.jitter = self.jitter if isinstance(self.jitter, bool) else bool(self.jitter)
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def get_delay(self, attempt: int) -> float:
        """
        Calculate the delay after a failed attempt.

        Args:
            attempt: 1-indexed number of the attempt that just failed

        Returns:
            Delay in seconds, capped at max_delay
        """
        if self.backoff == BackoffStrategy.LINEAR:
            base_delay = self.base_delay * attempt
        else:
            base_delay = self.base_delay * (self.exponential_base ** (attempt - 1))

        if self.jitter:
            # Equal jitter: half fixed, half random
            delay = (base_delay / 2) + random.uniform(0, base_delay / 2)
        else:
            delay = base_delay

        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if error should be retried.

        Args:
            error: The exception that occurred
            attempt: 1-indexed number of the attempt that just failed

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(error, PipelineError):
            return error.is_retryable

        category = classify_exception(error)
        return category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


def with_retry_async(config: RetryConfig | None = None):
    """
    Decorator for retrying async functions with backoff.

    ``asyncio.CancelledError`` is a BaseException and passes straight through;
    a cancelled call is never retried.

    Usage:
        @with_retry_async(config=RetryConfig(backoff=BackoffStrategy.LINEAR))
        async def download(key):
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_error: Exception | None = None

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            "Retry succeeded for %s after %d attempts",
                            func.__name__,
                            attempt,
                            extra={
                                "operation": func.__name__,
                                "attempt": attempt,
                                "total_attempts": config.max_attempts,
                            },
                        )

                    return result

                except Exception as e:
                    last_error = e
                    wrapped = e if isinstance(e, PipelineError) else wrap_exception(e)
                    error_category = _extract_error_category(wrapped)

                    if not config.should_retry(wrapped, attempt):
                        _log_retry_failure(
                            func.__name__, wrapped, e, error_category, config
                        )
                        if wrapped is not e:
                            raise wrapped from e
                        raise

                    delay = config.get_delay(attempt)
                    logger.warning(
                        "Retryable error for %s, will retry",
                        func.__name__,
                        extra={
                            "operation": func.__name__,
                            "attempt": attempt,
                            "max_attempts": config.max_attempts,
                            "error_category": error_category,
                            "delay_seconds": round(delay, 2),
                            "error_message": str(e)[:200],
                        },
                    )

                    await asyncio.sleep(delay)

            if last_error:
                raise last_error

        return wrapper

    return decorator


__all__ = [
    "BackoffStrategy",
    "RetryConfig",
    "with_retry_async",
]
