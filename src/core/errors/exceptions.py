"""
Unified exception hierarchy for the upload pipeline.

Provides typed exceptions with retry classification so that the line
processor, worker and strategies can tell content failures apart from
infrastructure failures.
"""


# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Base categories
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class TimeoutError(TransientError):
    """Operation timeout error (transient, retryable)."""

    pass


class ConnectionError(TransientError):
    """Connection error (transient, retryable)."""

    pass


# =============================================================================
# Domain-Specific Errors
# =============================================================================


class ParseError(PermanentError):
    """A CNAB line could not be parsed. Deterministic, never retried."""

    def __init__(
        self,
        message: str,
        line_index: int | None = None,
        field_name: str | None = None,
        cause: Exception | None = None,
    ):
        context = {}
        if line_index is not None:
            context["line_index"] = line_index
        if field_name is not None:
            context["field"] = field_name
        super().__init__(message, cause, context)
        self.line_index = line_index
        self.field_name = field_name


class TransientPersistenceError(TransientError):
    """Database write failed for a reason that may clear on retry."""

    pass


class QueueUnavailableError(TransientError):
    """Upload queue could not be reached or rejected the operation."""

    pass


class StorageError(TransientError):
    """Raw upload content could not be read from or written to storage."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================

TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "timeout",
        "timed out",
        "connection",
        "database is locked",
        "deadlock",
        "lock wait",
        "could not serialize",
        "temporarily unavailable",
        "service unavailable",
        "broken pipe",
    }
)

DUPLICATE_ERROR_MARKERS = frozenset(
    {
        "unique constraint",
        "duplicate key",
        "unique violation",
        "integrityerror",
    }
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if exception is transient (retriable).

    Returns True if this is a transient error that may succeed on retry.
    """
    if isinstance(exc, PipelineError):
        return exc.category == ErrorCategory.TRANSIENT

    return classify_exception(exc) == ErrorCategory.TRANSIENT


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if exception should be retried.

    Retryable errors include transient errors and unknown errors
    (conservative retry). Permanent errors and duplicates are not.
    """
    if isinstance(exc, PipelineError):
        return exc.is_retryable

    category = classify_exception(exc)
    return category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


def classify_os_error(error: OSError) -> ErrorCategory:
    """
    Classify OSError by errno into error category.

    Conservative classification: only mark as PERMANENT if certain.
    Disk full (ENOSPC), read-only filesystem (EROFS), permission denied (EACCES/EPERM).
    """
    import errno

    permanent_errnos = (errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM)
    return ErrorCategory.PERMANENT if error.errno in permanent_errnos else ErrorCategory.TRANSIENT


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if any(m in exc_type or m in exc_str for m in DUPLICATE_ERROR_MARKERS):
        return ErrorCategory.DUPLICATE

    if any(m in exc_type or m in exc_str for m in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, FileNotFoundError):
        return ErrorCategory.PERMANENT

    if isinstance(exc, OSError):
        return classify_os_error(exc)

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in appropriate PipelineError subclass."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    context = context or {}
    context.setdefault("error_type", type(exc).__name__)

    if category == ErrorCategory.TRANSIENT:
        return TransientError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)
