"""Periodic re-enqueue of uploads that stopped making progress."""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta

from core.logging.utilities import log_exception

from cnab_ingest.models import as_utc, utcnow
from cnab_ingest.persistence import UploadRepository
from cnab_ingest.queue.base import UploadQueue
from cnab_ingest.types import ProcessingContext

logger = logging.getLogger(__name__)

RECOVERY_INTERVAL_SECONDS = 300
STALE_AFTER_MINUTES = 30


class IncompleteUploadRecovery:
    """
    Finds Pending/Processing uploads older than ``stale_after`` and puts
    them back on the queue. A worker picking one up resumes from its last
    checkpoint.

    An upload is left alone when it has no stored file, or when its last
    checkpoint is younger than ``stale_after / 2`` (still progressing).
    """

    def __init__(
        self,
        repository: UploadRepository,
        queue: UploadQueue,
        interval_seconds: float = RECOVERY_INTERVAL_SECONDS,
        stale_after_minutes: float = STALE_AFTER_MINUTES,
    ):
        self.repository = repository
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self._task: asyncio.Task | None = None
        self.total_requeued = 0

    async def recover_once(self, now: datetime | None = None) -> int:
        """Run one recovery pass. Returns the number of uploads re-enqueued."""
        now = now or utcnow()
        context = ProcessingContext()
        stale = await self.repository.find_incomplete_uploads(started_before=now - self.stale_after)
        if not stale:
            logger.debug("No incomplete uploads found", extra=context.log_extra())
            return 0

        logger.info(
            "Found incomplete uploads that need recovery",
            extra=context.log_extra(stale_uploads=len(stale)),
        )

        requeued = 0
        errors = 0
        recent_checkpoint = now - self.stale_after / 2
        for upload in stale:
            upload_context = context.for_upload(upload.id)
            if not upload.storage_path:
                logger.warning(
                    "Cannot recover upload: missing storage path",
                    extra=upload_context.log_extra(),
                )
                errors += 1
                continue

            checkpoint_at = as_utc(upload.last_checkpoint_at)
            if checkpoint_at is not None and checkpoint_at > recent_checkpoint:
                logger.info(
                    "Skipping upload: checkpoint updated recently",
                    extra=upload_context.log_extra(last_line=upload.last_checkpoint_line),
                )
                continue

            try:
                await self.queue.enqueue(upload.id, upload.storage_path)
            except Exception as e:
                errors += 1
                log_exception(logger, e, "Failed to recover upload", **upload_context.log_extra())
                continue

            requeued += 1
            logger.info(
                "Recovered incomplete upload",
                extra=upload_context.log_extra(
                    file_name=upload.file_name,
                    start_line=upload.resume_line,
                    records_processed=upload.processed_line_count,
                    total_lines=upload.total_line_count,
                ),
            )

        self.total_requeued += requeued
        logger.info(
            "Recovery pass completed",
            extra=context.log_extra(requeued=requeued, records_failed=errors),
        )
        return requeued

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.recover_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.error(
                    "Error in incomplete upload recovery, will retry next interval",
                    extra={"error": str(e)},
                    exc_info=True,
                )
                await asyncio.sleep(self.interval_seconds)
