"""
Background worker for queued uploads.

Consumes upload messages through the ``cnab-upload-processors`` consumer
group, downloads the raw file from storage and processes it from the last
checkpoint onwards.

For each message:
1. Mark the upload Processing (with the attempt's retry count)
2. Download the file (retried with linear backoff)
3. Resume from ``last_checkpoint_line + 1``
4. Process lines in parallel
5. Mark Success and acknowledge

Retryable failures are retried with exponential backoff; permanent ones
(e.g. a file where every line failed) stop immediately. After the last
attempt the message is written to the dead-letter stream, then acknowledged, then
the upload is marked Failed. A message is never acknowledged before its
dead-letter copy exists.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable

from config.config import StorageConfig, WorkerConfig
from core.errors.exceptions import PermanentError, is_retryable_error
from core.logging.utilities import log_exception
from core.resilience.retry import BackoffStrategy, RetryConfig, with_retry_async
from core.utils import generate_worker_id

from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.models import UploadModel
from cnab_ingest.parser import split_lines
from cnab_ingest.persistence import UploadRepository
from cnab_ingest.queue.base import QueueMessage, UploadQueue
from cnab_ingest.storage import LocalObjectStorage
from cnab_ingest.types import ProcessingContext, ProcessingSummary, UploadStatus
from cnab_ingest.upload_processor import ParallelUploadProcessor

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "cnab-upload-processors"


def setup_shutdown_signal_handlers(callback: Callable[[], None]) -> None:
    """Register SIGTERM/SIGINT handlers that invoke callback on signal.

    On Unix, uses the event loop's add_signal_handler(). On Windows,
    falls back to signal.signal() since add_signal_handler() is not supported.
    """
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, callback)
    except NotImplementedError:
        def _handler(signum, frame):
            logger.info("Received signal %s, initiating shutdown", signum)
            callback()

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)


class UploadWorker:
    """
    Processes queued uploads one message at a time.

    Usage:
        worker = UploadWorker(queue, repository, storage, processor)
        await worker.run()          # until request_shutdown() or a signal
    """

    WORKER_NAME = "upload_worker"

    def __init__(
        self,
        queue: UploadQueue,
        repository: UploadRepository,
        storage: LocalObjectStorage,
        processor: ParallelUploadProcessor,
        config: WorkerConfig | None = None,
        storage_config: StorageConfig | None = None,
        consumer_group: str = CONSUMER_GROUP,
        consumer_id: str | None = None,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.repository = repository
        self.storage = storage
        self.processor = processor
        self.config = config or WorkerConfig()
        self.consumer_group = consumer_group
        self.consumer_id = consumer_id or generate_worker_id(self.config.consumer_id_prefix)
        self.metrics = metrics or NoOpMetrics()
        self._sleep = sleep

        self.retry = RetryConfig(
            max_attempts=self.config.max_retries,
            base_delay=self.config.base_delay_ms / 1000,
            max_delay=self.config.max_delay_ms / 1000,
            backoff=BackoffStrategy.EXPONENTIAL,
            jitter=False,
        )
        storage_config = storage_config or StorageConfig()
        self._download = with_retry_async(
            RetryConfig(
                max_attempts=storage_config.download_attempts,
                base_delay=storage_config.download_delay_ms / 1000,
                backoff=BackoffStrategy.LINEAR,
                jitter=False,
            )
        )(self.storage.download)

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._messages_handled = 0
        self._messages_dead_lettered = 0

        logger.info(
            "Initialized upload worker",
            extra={
                "worker_id": self.consumer_id,
                "consumer_group": self.consumer_group,
                "max_attempts": self.retry.max_attempts,
            },
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def request_shutdown(self) -> None:
        """Stop after the message in progress completes."""
        if not self._shutdown_event.is_set():
            logger.info("Graceful shutdown requested", extra={"worker_id": self.consumer_id})
        self._shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True) -> None:
        if self._running:
            logger.warning("Worker already running, ignoring duplicate start call")
            return

        if install_signal_handlers:
            setup_shutdown_signal_handlers(self.request_shutdown)

        await self.queue.initialize_consumer_group(self.consumer_group)
        self._running = True
        poll_interval = self.config.poll_interval_ms / 1000

        logger.info(
            "Upload worker started",
            extra={"worker_id": self.consumer_id, "consumer_group": self.consumer_group},
        )
        try:
            while not self._shutdown_event.is_set():
                handled = await self.run_once()
                if not handled:
                    await self._wait_for_shutdown(poll_interval)
        finally:
            self._running = False
            logger.info(
                "Upload worker stopped",
                extra={
                    "worker_id": self.consumer_id,
                    "records_processed": self._messages_handled,
                    "dead_lettered": self._messages_dead_lettered,
                },
            )

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """Dequeue and handle at most one message. False if the queue was empty.

        A broker or handling error is logged and the loop carries on; the
        message stays pending and is redelivered later.
        """
        try:
            message = await self.queue.dequeue(self.consumer_group, self.consumer_id)
        except Exception as e:
            log_exception(
                logger, e, "Failed to dequeue upload message",
                worker_id=self.consumer_id, consumer_group=self.consumer_group,
            )
            return False

        if message is None:
            return False

        try:
            await self.handle_message(message)
        except Exception as e:
            log_exception(
                logger, e, "Unexpected error handling upload message",
                worker_id=self.consumer_id, message_id=message.message_id,
                upload_id=message.upload_id,
            )
        self._messages_handled += 1
        return True

    async def handle_message(self, message: QueueMessage) -> None:
        context = ProcessingContext(upload_id=message.upload_id, worker_id=self.consumer_id)
        logger.info(
            "Processing upload message",
            extra=context.log_extra(
                message_id=message.message_id,
                storage_path=message.storage_path,
                retry_count=message.delivery_count - 1,
            ),
        )

        last_error: Exception | None = None
        attempts = 0
        for attempt in range(1, self.retry.max_attempts + 1):
            attempts = attempt
            try:
                upload = await self.repository.get_upload(message.upload_id)
                if upload is None:
                    logger.warning(
                        "Upload not found, dropping message",
                        extra=context.log_extra(message_id=message.message_id),
                    )
                    await self.queue.acknowledge(self.consumer_group, message.message_id)
                    return

                summary = await self._process_attempt(upload, message, attempt, context)
                await self.queue.acknowledge(self.consumer_group, message.message_id)

                logger.info(
                    "Upload processing completed",
                    extra=context.log_extra(
                        message_id=message.message_id,
                        attempt=attempt,
                        records_processed=summary.processed,
                        records_failed=summary.failed,
                        records_skipped=summary.skipped,
                    ),
                )
                return

            except Exception as e:
                last_error = e
                if attempt >= self.retry.max_attempts or not is_retryable_error(e):
                    break

                delay = self.retry.get_delay(attempt)
                logger.warning(
                    "Upload processing failed, will retry",
                    extra=context.log_extra(
                        attempt=attempt,
                        max_attempts=self.retry.max_attempts,
                        delay_seconds=delay,
                        error_message=str(e)[:500],
                        error_type=type(e).__name__,
                    ),
                )
                await self._sleep(delay)

        await self._handle_final_failure(message, last_error, attempts, context)

    async def _process_attempt(
        self,
        upload: UploadModel,
        message: QueueMessage,
        attempt: int,
        context: ProcessingContext,
    ) -> ProcessingSummary:
        started = time.perf_counter()
        await self.repository.mark_processing(upload.id, retry_count=attempt - 1)

        storage_path = upload.storage_path or message.storage_path
        content = await self._download(storage_path)
        lines = split_lines(content.decode("utf-8"))

        # Counters restored from the checkpoint are only trusted together with it.
        start_line = upload.resume_line
        baseline = None
        if upload.last_checkpoint_line is not None:
            baseline = ProcessingSummary(
                processed=upload.processed_line_count,
                failed=upload.failed_line_count,
                skipped=upload.skipped_line_count,
            )
            logger.info(
                "Resuming from checkpoint",
                extra=context.log_extra(start_line=start_line, total_lines=len(lines)),
            )

        try:
            summary = await self.processor.process(
                upload.id,
                upload.file_hash,
                lines,
                start_line=start_line,
                baseline=baseline,
                context=context,
            )
        finally:
            self.metrics.observe_upload_duration(time.perf_counter() - started)

        if summary.processed == 0 and summary.failed > 0:
            raise PermanentError(summary.first_error or "No valid lines in file")

        await self.repository.mark_success(
            upload.id,
            processed=summary.processed,
            failed=summary.failed,
            skipped=summary.skipped,
            storage_path=storage_path,
        )
        self.metrics.record_upload(UploadStatus.SUCCESS.value)
        return summary

    async def _handle_final_failure(
        self,
        message: QueueMessage,
        error: Exception | None,
        attempts: int,
        context: ProcessingContext,
    ) -> None:
        reason = str(error) if error is not None else "Unknown processing error"
        if error is not None:
            log_exception(
                logger, error, "Upload processing failed after all attempts",
                **context.log_extra(message_id=message.message_id, total_attempts=attempts),
            )

        # DLQ write first: if it raises, the message is left pending for redelivery.
        await self.queue.move_to_dead_letter(
            message.message_id, message.upload_id, reason, attempts
        )
        await self.queue.acknowledge(self.consumer_group, message.message_id)
        self._messages_dead_lettered += 1

        await self.repository.mark_failure(message.upload_id, reason)
        self.metrics.record_upload(UploadStatus.FAILED.value)
