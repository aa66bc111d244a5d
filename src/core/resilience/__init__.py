"""
Resilience patterns module.

Components:
    - RetryConfig: Linear or exponential backoff configuration
    - @with_retry_async decorator: Retry with optional jitter
"""

from .retry import (
    BackoffStrategy,
    RetryConfig,
    with_retry_async,
)

__all__ = [
    "BackoffStrategy",
    "RetryConfig",
    "with_retry_async",
]
