"""Checkpointing of upload progress.

A checkpoint records the highest line index below which every line has
been handled, plus the running counters. A restarted worker resumes from
``last_checkpoint_line + 1``. Checkpoints are advisory: reprocessing a
line is safe, so a lost checkpoint only costs time.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from core.logging.utilities import log_exception

from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.types import ProcessingContext

logger = logging.getLogger(__name__)


def should_checkpoint(total_processed: int, interval: int) -> bool:
    """True iff ``total_processed > 0`` and it is a multiple of ``interval``.

    Raises:
        ValueError: interval is zero or negative
    """
    if interval <= 0:
        raise ValueError(f"checkpoint interval must be > 0, got {interval}")
    return total_processed > 0 and total_processed % interval == 0


class CheckpointStore(Protocol):
    async def save_checkpoint(
        self, upload_id: str, last_line: int, processed: int, failed: int, skipped: int
    ) -> None: ...


class CheckpointManager:
    """Persists checkpoints, never letting a save failure escape."""

    should_checkpoint = staticmethod(should_checkpoint)

    def __init__(self, store: CheckpointStore, metrics: PipelineMetrics | None = None):
        self.store = store
        self.metrics = metrics or NoOpMetrics()

    async def save_checkpoint(
        self,
        upload_id: str,
        last_line: int,
        processed: int,
        failed: int,
        skipped: int,
        context: ProcessingContext | None = None,
    ) -> bool:
        """Save progress. Returns False if the save failed (already logged).

        Cancellation is logged and re-raised so the caller's cancellation
        is not lost.
        """
        context = context or ProcessingContext(upload_id=upload_id)
        try:
            await self.store.save_checkpoint(upload_id, last_line, processed, failed, skipped)
        except asyncio.CancelledError:
            logger.warning(
                "Checkpoint save cancelled",
                extra=context.log_extra(last_line=last_line),
            )
            raise
        except Exception as e:
            self.metrics.record_checkpoint(False)
            log_exception(
                logger,
                e,
                "Checkpoint save failed, continuing",
                level=logging.WARNING,
                **context.log_extra(last_line=last_line),
            )
            return False

        self.metrics.record_checkpoint(True)
        logger.debug(
            "Checkpoint saved",
            extra=context.log_extra(
                last_line=last_line,
                records_processed=processed,
                records_failed=failed,
                records_skipped=skipped,
            ),
        )
        return True


class CheckpointCoordinator:
    """
    Checkpoint bookkeeping for one pass over an upload's lines.

    Lines finish out of order when several workers run, so the coordinator
    tracks the contiguous watermark: the last line index such that it and
    every line before it are done. At most one save runs at a time; save
    requests made while one is running collapse into a single follow-up
    save of the newest state.

    Must only be driven from one task (the aggregator).
    """

    def __init__(
        self,
        manager: CheckpointManager,
        upload_id: str,
        line_indices: Sequence[int],
        context: ProcessingContext | None = None,
    ):
        self.manager = manager
        self.upload_id = upload_id
        self.context = context or ProcessingContext(upload_id=upload_id)
        self._line_indices = list(line_indices)
        self._next_position = 0
        self._done_ahead: set[int] = set()
        self._in_flight: asyncio.Task | None = None
        self._pending: tuple[int, int, int, int] | None = None
        self.saves_started = 0

    @property
    def watermark(self) -> int | None:
        """Line index of the contiguous completed prefix, or None if empty."""
        if self._next_position == 0:
            return None
        return self._line_indices[self._next_position - 1]

    def mark_done(self, position: int) -> None:
        """Record that the line at ``position`` in the work list finished."""
        self._done_ahead.add(position)
        while self._next_position in self._done_ahead:
            self._done_ahead.remove(self._next_position)
            self._next_position += 1

    def request(self, processed: int, failed: int, skipped: int) -> None:
        """Ask for a checkpoint of the current watermark and counters."""
        last_line = self.watermark
        if last_line is None:
            return

        snapshot = (last_line, processed, failed, skipped)
        if self._in_flight is not None and not self._in_flight.done():
            self._pending = snapshot
            return

        self._in_flight = asyncio.create_task(self._run(snapshot))

    async def _run(self, snapshot: tuple[int, int, int, int]) -> None:
        while snapshot is not None:
            self.saves_started += 1
            last_line, processed, failed, skipped = snapshot
            await self.manager.save_checkpoint(
                self.upload_id, last_line, processed, failed, skipped, self.context
            )
            snapshot, self._pending = self._pending, None

    async def flush(self) -> None:
        """Wait for the in-flight save, including any coalesced follow-up."""
        if self._in_flight is not None:
            await self._in_flight
            self._in_flight = None

    async def cancel(self) -> None:
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
            await asyncio.gather(self._in_flight, return_exceptions=True)
        self._in_flight = None
        self._pending = None
