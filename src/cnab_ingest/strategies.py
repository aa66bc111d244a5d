"""Upload processing strategies.

A strategy decides what happens to an accepted upload: process it inline
and report the final result (sync), or hand it to the queue and report
202 (async). Both return an ``UploadResult``; callers never need to know
which one ran.
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import StrEnum

from core.logging.utilities import log_exception

from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.models import UploadModel
from cnab_ingest.parser import split_lines
from cnab_ingest.persistence import UploadRepository
from cnab_ingest.queue.base import UploadQueue
from cnab_ingest.types import (
    ProcessingContext,
    UploadResult,
    UploadStatus,
    UploadStatusCode,
)
from cnab_ingest.upload_processor import ParallelUploadProcessor

logger = logging.getLogger(__name__)


class ProcessingMode(StrEnum):
    SYNC = "sync"
    ASYNC = "async"


class UploadProcessingStrategy(ABC):
    mode: ProcessingMode

    @abstractmethod
    async def process_upload(
        self,
        content: str,
        upload: UploadModel,
        storage_path: str | None = None,
        context: ProcessingContext | None = None,
    ) -> UploadResult:
        """Process or schedule ``upload``. Cancellation always propagates."""


class SynchronousProcessingStrategy(UploadProcessingStrategy):
    """Processes the whole file before returning.

    Result mapping:
    - at least one line persisted: 200 with the persisted count
    - nothing persisted and at least one line failed: 422, upload Failed
    - nothing persisted and nothing failed (all duplicates): 200 with 0
    - unexpected error: 500, upload Failed
    """

    mode = ProcessingMode.SYNC

    def __init__(
        self,
        repository: UploadRepository,
        processor: ParallelUploadProcessor,
        metrics: PipelineMetrics | None = None,
    ):
        self.repository = repository
        self.processor = processor
        self.metrics = metrics or NoOpMetrics()

    async def process_upload(
        self,
        content: str,
        upload: UploadModel,
        storage_path: str | None = None,
        context: ProcessingContext | None = None,
    ) -> UploadResult:
        context = (context or ProcessingContext()).for_upload(upload.id)
        started = time.perf_counter()

        logger.info(
            "Processing upload synchronously",
            extra=context.log_extra(file_hash=upload.file_hash, file_name=upload.file_name),
        )

        try:
            await self.repository.mark_processing(upload.id, retry_count=0)
            summary = await self.processor.process(
                upload.id, upload.file_hash, split_lines(content), start_line=0, context=context
            )

            if summary.processed == 0 and summary.failed > 0:
                message = summary.first_error or "No valid lines in file"
                await self.repository.mark_failure(upload.id, message)
                self.metrics.record_upload(UploadStatus.FAILED.value)
                logger.warning(
                    "Upload rejected, no line could be processed",
                    extra=context.log_extra(
                        records_failed=summary.failed,
                        records_skipped=summary.skipped,
                        error_message=message,
                        status_code=UploadStatusCode.UNPROCESSABLE_ENTITY,
                    ),
                )
                return UploadResult.failure(
                    UploadStatusCode.UNPROCESSABLE_ENTITY, message, upload.id
                )

            await self.repository.mark_success(
                upload.id,
                processed=summary.processed,
                failed=summary.failed,
                skipped=summary.skipped,
                storage_path=storage_path,
            )
            self.metrics.record_upload(UploadStatus.SUCCESS.value)
            logger.info(
                "Upload processed",
                extra=context.log_extra(
                    records_processed=summary.processed,
                    records_failed=summary.failed,
                    records_skipped=summary.skipped,
                    status_code=UploadStatusCode.SUCCESS,
                ),
            )
            return UploadResult.success(summary.processed, upload.id)

        except Exception as e:
            message = f"Processing failed: {e}"
            log_exception(logger, e, "Synchronous upload processing failed", **context.log_extra())
            await self._record_failure(upload.id, message, context)
            self.metrics.record_upload(UploadStatus.FAILED.value)
            return UploadResult.failure(
                UploadStatusCode.INTERNAL_SERVER_ERROR, message, upload.id
            )
        finally:
            self.metrics.observe_upload_duration(time.perf_counter() - started)

    async def _record_failure(
        self, upload_id: str, message: str, context: ProcessingContext
    ) -> None:
        # The 500 result is returned even when the status update itself fails.
        try:
            await self.repository.mark_failure(upload_id, message)
        except Exception as e:
            log_exception(
                logger, e, "Could not mark upload as failed", level=logging.WARNING,
                include_traceback=False, **context.log_extra(),
            )


class AsynchronousProcessingStrategy(UploadProcessingStrategy):
    """Enqueues the upload for a worker and returns 202 immediately."""

    mode = ProcessingMode.ASYNC

    def __init__(self, queue: UploadQueue, metrics: PipelineMetrics | None = None):
        self.queue = queue
        self.metrics = metrics or NoOpMetrics()

    async def process_upload(
        self,
        content: str,
        upload: UploadModel,
        storage_path: str | None = None,
        context: ProcessingContext | None = None,
    ) -> UploadResult:
        context = (context or ProcessingContext()).for_upload(upload.id)
        storage_path = storage_path or upload.storage_path

        try:
            if not storage_path:
                raise ValueError("upload has no storage path")
            message_id = await self.queue.enqueue(upload.id, storage_path)
        except Exception as e:
            log_exception(logger, e, "Failed to enqueue upload", **context.log_extra())
            return UploadResult.failure(
                UploadStatusCode.INTERNAL_SERVER_ERROR,
                f"Failed to enqueue file for processing: {e}",
                upload.id,
            )

        logger.info(
            "Upload accepted for background processing",
            extra=context.log_extra(
                message_id=message_id,
                storage_path=storage_path,
                status_code=UploadStatusCode.ACCEPTED,
            ),
        )
        return UploadResult.accepted(upload.id)


def create_strategy(
    mode: str | ProcessingMode,
    repository: UploadRepository,
    processor: ParallelUploadProcessor,
    queue: UploadQueue | None = None,
    metrics: PipelineMetrics | None = None,
) -> UploadProcessingStrategy:
    """Build the strategy configured by ``processing.mode``."""
    mode = ProcessingMode(mode)
    if mode == ProcessingMode.ASYNC:
        if queue is None:
            raise ValueError("async processing mode requires an upload queue")
        return AsynchronousProcessingStrategy(queue, metrics)
    return SynchronousProcessingStrategy(repository, processor, metrics)
