"""Value types shared by the upload pipeline.

Everything here is an immutable dataclass or an enum; no I/O.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any


class LineOutcome(StrEnum):
    """Result of processing a single CNAB line."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class UploadStatus(StrEnum):
    """Lifecycle of an Upload record."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    SUCCESS = "Success"
    FAILED = "Failed"


class UploadStatusCode(IntEnum):
    """Status codes reported to the HTTP layer.

    Values match the HTTP status the caller should answer with.
    """

    SUCCESS = 200
    ACCEPTED = 202
    BAD_REQUEST = 400
    CONFLICT = 409
    UNPROCESSABLE_ENTITY = 422
    INTERNAL_SERVER_ERROR = 500


class InsertOutcome(StrEnum):
    """Result of a unique insert. Transient failures are raised, not returned."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ProcessingContext:
    """Correlation data passed explicitly through every pipeline call.

    Replaces ambient logging context: whoever needs to log with correlation
    fields receives a context and spreads ``log_extra()`` into ``extra=``.
    """

    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    upload_id: str | None = None
    worker_id: str | None = None

    def for_upload(self, upload_id: str) -> "ProcessingContext":
        return ProcessingContext(
            correlation_id=self.correlation_id,
            upload_id=upload_id,
            worker_id=self.worker_id,
        )

    def log_extra(self, **fields: Any) -> dict[str, Any]:
        extra: dict[str, Any] = {"correlation_id": self.correlation_id}
        if self.upload_id is not None:
            extra["upload_id"] = self.upload_id
        if self.worker_id is not None:
            extra["worker_id"] = self.worker_id
        extra.update(fields)
        return extra


@dataclass(frozen=True)
class LineRetryPolicy:
    """Bounded retry for a single line's persistence.

    The pause after failed attempt ``n`` is ``retry_delay * n`` seconds,
    capped at ``max_delay``.
    """

    max_retries: int = 3
    retry_delay: float = 0.5
    max_delay: float = 10.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")

    def delay_for(self, attempt: int) -> float:
        return min(self.retry_delay * attempt, self.max_delay)


@dataclass(frozen=True)
class TransactionRecord:
    """A parsed CNAB line, ready to persist."""

    nature_code: str
    amount: Decimal
    signed_amount: Decimal
    occurred_at: datetime
    cpf: str
    card: str
    store_owner: str
    store_name: str


@dataclass(frozen=True)
class ParseResult:
    record: TransactionRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class LineResult:
    outcome: LineOutcome
    attempts: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ProcessingSummary:
    """Counts for one pass over an upload's lines."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    last_line: int | None = None
    first_error: str | None = None

    @property
    def total(self) -> int:
        return self.processed + self.failed + self.skipped


@dataclass(frozen=True)
class UploadResult:
    """What the pipeline reports back for one submitted file."""

    transaction_count: int
    status_code: UploadStatusCode
    upload_id: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status_code in (UploadStatusCode.SUCCESS, UploadStatusCode.ACCEPTED)

    @classmethod
    def success(cls, count: int, upload_id: str) -> "UploadResult":
        return cls(count, UploadStatusCode.SUCCESS, upload_id)

    @classmethod
    def accepted(cls, upload_id: str) -> "UploadResult":
        return cls(0, UploadStatusCode.ACCEPTED, upload_id, "Upload queued for processing")

    @classmethod
    def failure(
        cls, status_code: UploadStatusCode, message: str, upload_id: str | None = None
    ) -> "UploadResult":
        return cls(0, status_code, upload_id, message)


def idempotency_key(file_hash: str, line_index: int) -> str:
    """Opaque per-line key: ``{fileHash}:{lineIndex}``."""
    return f"{file_hash}:{line_index}"
