"""Per-line processing: dedup, parse, idempotent persist with bounded retry."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from core.logging.utilities import log_exception

from cnab_ingest import parser
from cnab_ingest.hashing import compute_line_hash
from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.types import (
    InsertOutcome,
    LineOutcome,
    LineResult,
    LineRetryPolicy,
    ParseResult,
    ProcessingContext,
    TransactionRecord,
    idempotency_key,
)

logger = logging.getLogger(__name__)


class LineStore(Protocol):
    async def line_hash_exists(self, line_hash: str) -> bool: ...

    async def insert_line_uniquely(
        self,
        upload_id: str,
        idempotency_key: str,
        record: TransactionRecord,
        line_hash: str,
        line_content: str,
    ) -> InsertOutcome: ...


class LineProcessor:
    """
    Processes one CNAB line at a time.

    Duplicates are not errors: a line whose content hash is already known,
    or whose insert collides on the idempotency key or the line hash,
    resolves to SKIPPED. The transaction and its line hash record are
    written in one atomic unit. Empty and unparseable lines are FAILED on
    the first attempt. Anything else raised by the
    store is retried with linear backoff until the policy is exhausted.

    Cancellation is never caught here; it propagates out of whatever await
    is in progress and no further attempts are made.
    """

    def __init__(
        self,
        store: LineStore,
        metrics: PipelineMetrics | None = None,
        parse: Callable[[str, int], ParseResult] = parser.parse,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.metrics = metrics or NoOpMetrics()
        self._parse = parse
        self._sleep = sleep

    async def process_line(
        self,
        line: str,
        line_index: int,
        upload_id: str,
        upload_file_hash: str,
        retry_policy: LineRetryPolicy,
        context: ProcessingContext | None = None,
    ) -> LineResult:
        result = await self._process(
            line, line_index, upload_id, upload_file_hash, retry_policy, context
        )
        self.metrics.record_line(result.outcome)
        return result

    async def _process(
        self,
        line: str,
        line_index: int,
        upload_id: str,
        upload_file_hash: str,
        retry_policy: LineRetryPolicy,
        context: ProcessingContext | None,
    ) -> LineResult:
        context = context or ProcessingContext(upload_id=upload_id)
        key = idempotency_key(upload_file_hash, line_index)
        try:
            line_hash = compute_line_hash(line)
        except ValueError as e:
            error = f"Line {line_index + 1}: {e}"
            logger.warning(
                "Line cannot be hashed",
                extra=context.log_extra(line_index=line_index, error_message=error),
            )
            return LineResult(LineOutcome.FAILED, attempts=1, error=error)
        record: TransactionRecord | None = None

        for attempt in range(1, retry_policy.max_retries + 1):
            try:
                if await self.store.line_hash_exists(line_hash):
                    logger.debug(
                        "Duplicate line content, skipping",
                        extra=context.log_extra(line_index=line_index, line_hash=line_hash),
                    )
                    return LineResult(LineOutcome.SKIPPED, attempts=attempt)

                if record is None:
                    parsed = self._parse(line, line_index)
                    if not parsed.ok:
                        logger.warning(
                            "Line failed to parse",
                            extra=context.log_extra(
                                line_index=line_index, error_message=parsed.error
                            ),
                        )
                        return LineResult(LineOutcome.FAILED, attempts=attempt, error=parsed.error)
                    record = parsed.record

                outcome = await self.store.insert_line_uniquely(
                    upload_id, key, record, line_hash, line
                )

            except Exception as e:
                if attempt >= retry_policy.max_retries:
                    log_exception(
                        logger,
                        e,
                        "Line persistence failed, retries exhausted",
                        include_traceback=False,
                        **context.log_extra(
                            line_index=line_index,
                            idempotency_key=key,
                            attempt=attempt,
                            max_attempts=retry_policy.max_retries,
                        ),
                    )
                    return LineResult(LineOutcome.FAILED, attempts=attempt, error=str(e))

                delay = retry_policy.delay_for(attempt)
                logger.warning(
                    "Line persistence failed, will retry",
                    extra=context.log_extra(
                        line_index=line_index,
                        attempt=attempt,
                        max_attempts=retry_policy.max_retries,
                        delay_seconds=delay,
                        error_message=str(e)[:200],
                    ),
                )
                self.metrics.record_line_retry()
                await self._sleep(delay)
                continue

            if outcome == InsertOutcome.DUPLICATE:
                logger.debug(
                    "Line already persisted, skipping",
                    extra=context.log_extra(
                        line_index=line_index, idempotency_key=key, line_hash=line_hash
                    ),
                )
                return LineResult(LineOutcome.SKIPPED, attempts=attempt)

            return LineResult(LineOutcome.SUCCESS, attempts=attempt)

        # range() above always returns from its last iteration
        raise AssertionError("unreachable")
