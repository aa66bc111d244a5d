"""Runs the line processor over an upload with a bounded pool of workers.

Workers pull the next line from a shared iterator and report each result
to a queue. One aggregator owns the counters and the checkpoint
coordinator, so no counter is ever shared between tasks.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace

from cnab_ingest.checkpoint import CheckpointCoordinator, CheckpointManager, should_checkpoint
from cnab_ingest.line_processor import LineProcessor
from cnab_ingest.types import (
    LineOutcome,
    LineResult,
    LineRetryPolicy,
    ProcessingContext,
    ProcessingSummary,
)

logger = logging.getLogger(__name__)


class ParallelUploadProcessor:
    """Fans an upload's lines out across ``parallel_workers`` tasks."""

    def __init__(
        self,
        line_processor: LineProcessor,
        checkpoint_manager: CheckpointManager,
        parallel_workers: int = 4,
        checkpoint_interval: int = 1000,
        retry_policy: LineRetryPolicy | None = None,
    ):
        if parallel_workers < 1:
            raise ValueError(f"parallel_workers must be >= 1, got {parallel_workers}")
        if checkpoint_interval <= 0:
            raise ValueError(f"checkpoint_interval must be > 0, got {checkpoint_interval}")
        self.line_processor = line_processor
        self.checkpoint_manager = checkpoint_manager
        self.parallel_workers = parallel_workers
        self.checkpoint_interval = checkpoint_interval
        self.retry_policy = retry_policy or LineRetryPolicy()

    async def process(
        self,
        upload_id: str,
        file_hash: str,
        lines: Sequence[tuple[int, str]],
        start_line: int = 0,
        baseline: ProcessingSummary | None = None,
        context: ProcessingContext | None = None,
    ) -> ProcessingSummary:
        """Process every line with index >= ``start_line``.

        ``baseline`` carries counters restored from a previous checkpoint;
        the returned summary includes them.
        """
        context = context or ProcessingContext(upload_id=upload_id)
        summary = baseline or ProcessingSummary()
        work = [(index, line) for index, line in lines if index >= start_line]
        if not work:
            return summary

        logger.info(
            "Processing upload lines",
            extra=context.log_extra(
                total_lines=len(work), start_line=start_line, file_hash=file_hash
            ),
        )

        results: asyncio.Queue = asyncio.Queue()
        positions = iter(enumerate(work))
        coordinator = CheckpointCoordinator(
            self.checkpoint_manager, upload_id, [index for index, _ in work], context
        )

        async def worker() -> None:
            for position, (line_index, line) in positions:
                try:
                    result = await self.line_processor.process_line(
                        line, line_index, upload_id, file_hash, self.retry_policy, context
                    )
                except Exception as e:
                    await results.put((position, e))
                    return
                await results.put((position, result))

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.parallel_workers, len(work)))
        ]
        try:
            summary = await self._aggregate(summary, len(work), results, coordinator)
            await coordinator.flush()
        except BaseException:
            await coordinator.cancel()
            raise
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return replace(summary, last_line=coordinator.watermark)

    async def _aggregate(
        self,
        summary: ProcessingSummary,
        expected: int,
        results: asyncio.Queue,
        coordinator: CheckpointCoordinator,
    ) -> ProcessingSummary:
        processed, failed, skipped = summary.processed, summary.failed, summary.skipped
        first_error = summary.first_error

        for handled in range(1, expected + 1):
            position, result = await results.get()
            if isinstance(result, Exception):
                raise result

            assert isinstance(result, LineResult)
            if result.outcome == LineOutcome.SUCCESS:
                processed += 1
            elif result.outcome == LineOutcome.SKIPPED:
                skipped += 1
            else:
                failed += 1
                if first_error is None:
                    first_error = result.error

            coordinator.mark_done(position)
            if should_checkpoint(handled, self.checkpoint_interval):
                coordinator.request(processed, failed, skipped)

        return ProcessingSummary(
            processed=processed,
            failed=failed,
            skipped=skipped,
            first_error=first_error,
        )
