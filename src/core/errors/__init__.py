"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    ConnectionError,
    ErrorCategory,
    ParseError,
    PermanentError,
    PipelineError,
    QueueUnavailableError,
    StorageError,
    TimeoutError,
    TransientError,
    TransientPersistenceError,
    classify_exception,
    is_retryable_error,
    is_transient_error,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    "TimeoutError",
    "ConnectionError",
    # Domain errors
    "ParseError",
    "TransientPersistenceError",
    "QueueUnavailableError",
    "StorageError",
    # Classification utilities
    "is_transient_error",
    "is_retryable_error",
    "classify_exception",
    "wrap_exception",
]
