"""
CNAB upload ingestion pipeline.

Fixed-width transaction files are parsed line by line and persisted with
per-line idempotency, checkpointed progress and a queue for background
processing.

Modules:
    parser          - CNAB line parsing
    line_processor  - Dedup and idempotent persistence of one line
    upload_processor- Parallel processing of an upload with checkpoints
    checkpoint      - Checkpoint predicate, manager and coordinator
    queue           - Upload queue contract and backends (memory, kafka)
    strategies      - Sync and async upload processing
    service         - File submission entry point
    worker          - Queue consumer
    recovery        - Re-enqueue of stale uploads
"""

from cnab_ingest.types import (
    LineOutcome,
    LineResult,
    ProcessingContext,
    ProcessingSummary,
    UploadResult,
    UploadStatus,
    UploadStatusCode,
    idempotency_key,
)

__version__ = "0.1.0"

__all__ = [
    "LineOutcome",
    "LineResult",
    "ProcessingContext",
    "ProcessingSummary",
    "UploadResult",
    "UploadStatus",
    "UploadStatusCode",
    "idempotency_key",
]
