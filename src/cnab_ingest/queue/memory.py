"""In-process upload queue with stream and consumer-group semantics.

Models a log-structured stream: entries get monotonically increasing ids
(``{millis}-{seq}``), each consumer group keeps its own delivery cursor and
a pending-entries list, and entries left pending longer than
``claim_idle_ms`` are handed to the next consumer that asks. Good for a
single process and for tests; nothing survives a restart.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from core.errors.exceptions import QueueUnavailableError

from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.queue.base import DeadLetterMessage, QueueMessage, QueueStats

logger = logging.getLogger(__name__)


@dataclass
class _PendingEntry:
    consumer_id: str
    delivered_at: float
    delivery_count: int = 1


@dataclass
class _GroupState:
    last_delivered_seq: int = 0
    pending: dict[str, _PendingEntry] = field(default_factory=dict)
    acknowledged: int = 0


class InMemoryUploadQueue:
    """UploadQueue backed by in-process data structures."""

    def __init__(
        self,
        stream: str = "cnab-upload-queue",
        dead_letter_stream: str = "cnab-upload-dlq",
        max_stream_length: int = 10000,
        claim_idle_ms: int = 300000,
        metrics: PipelineMetrics | None = None,
        clock=time.monotonic,
    ):
        self.stream = stream
        self.dead_letter_stream = dead_letter_stream
        self.max_stream_length = max_stream_length
        self.claim_idle_seconds = claim_idle_ms / 1000
        self.metrics = metrics or NoOpMetrics()
        self._clock = clock

        # message_id -> (seq, body)
        self._entries: OrderedDict[str, tuple[int, bytes]] = OrderedDict()
        self._groups: dict[str, _GroupState] = {}
        self.dead_letters: list[tuple[str, DeadLetterMessage]] = []
        self._seq = 0
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.debug("In-memory upload queue ready", extra={"stream": self.stream})

    async def close(self) -> None:
        pass

    def _next_id(self) -> tuple[int, str]:
        self._seq += 1
        return self._seq, f"{int(time.time() * 1000)}-{self._seq}"

    async def enqueue(self, upload_id: str, storage_path: str) -> str:
        message = QueueMessage(upload_id=upload_id, storage_path=storage_path)
        async with self._lock:
            seq, message_id = self._next_id()
            self._entries[message_id] = (seq, message.to_wire())
            self._trim()

        self.metrics.record_enqueued()
        logger.info(
            "Upload enqueued",
            extra={
                "upload_id": upload_id,
                "message_id": message_id,
                "storage_path": storage_path,
                "stream": self.stream,
            },
        )
        return message_id

    def _trim(self) -> None:
        """Drop the oldest entries beyond max_stream_length.

        An entry is only dropped once every group has delivered and
        acknowledged it, so trimming never loses work.
        """
        while len(self._entries) > self.max_stream_length:
            oldest_id, (oldest_seq, _) = next(iter(self._entries.items()))
            for group in self._groups.values():
                if oldest_seq > group.last_delivered_seq or oldest_id in group.pending:
                    return
            self._entries.popitem(last=False)

    async def initialize_consumer_group(self, name: str) -> None:
        async with self._lock:
            if name in self._groups:
                logger.info("Consumer group already exists", extra={"consumer_group": name})
                return
            self._groups[name] = _GroupState()
        logger.info(
            "Consumer group initialized",
            extra={"consumer_group": name, "stream": self.stream},
        )

    def _group(self, name: str) -> _GroupState:
        group = self._groups.get(name)
        if group is None:
            raise QueueUnavailableError(
                f"Consumer group '{name}' does not exist on stream '{self.stream}'",
                context={"consumer_group": name},
            )
        return group

    async def dequeue(self, consumer_group: str, consumer_id: str) -> QueueMessage | None:
        async with self._lock:
            group = self._group(consumer_group)
            now = self._clock()

            # Reclaim a message another consumer left pending too long
            for message_id, entry in group.pending.items():
                if now - entry.delivered_at >= self.claim_idle_seconds:
                    entry.consumer_id = consumer_id
                    entry.delivered_at = now
                    entry.delivery_count += 1
                    _, body = self._entries[message_id]
                    logger.info(
                        "Reclaimed idle message",
                        extra={
                            "consumer_group": consumer_group,
                            "message_id": message_id,
                            "worker_id": consumer_id,
                            "retry_count": entry.delivery_count - 1,
                        },
                    )
                    return QueueMessage.from_wire(body, message_id, entry.delivery_count)

            for message_id, (seq, body) in self._entries.items():
                if seq <= group.last_delivered_seq:
                    continue
                group.last_delivered_seq = seq
                group.pending[message_id] = _PendingEntry(consumer_id, now)
                return QueueMessage.from_wire(body, message_id)

        return None

    async def acknowledge(self, consumer_group: str, message_id: str) -> None:
        async with self._lock:
            group = self._group(consumer_group)
            if group.pending.pop(message_id, None) is None:
                logger.debug(
                    "Acknowledge for unknown or already acknowledged message",
                    extra={"consumer_group": consumer_group, "message_id": message_id},
                )
                return
            group.acknowledged += 1
            self._trim()

        logger.debug(
            "Message acknowledged",
            extra={"consumer_group": consumer_group, "message_id": message_id},
        )

    async def move_to_dead_letter(
        self, message_id: str, upload_id: str, reason: str, retry_count: int
    ) -> str:
        entry = DeadLetterMessage(
            upload_id=upload_id,
            original_message_id=message_id,
            failure_reason=reason,
            retry_count=retry_count,
        )
        async with self._lock:
            _, dlq_id = self._next_id()
            self.dead_letters.append((dlq_id, entry))
            if len(self.dead_letters) > self.max_stream_length:
                del self.dead_letters[0]

        self.metrics.record_dead_letter()
        logger.warning(
            "Message moved to dead-letter stream",
            extra={
                "upload_id": upload_id,
                "message_id": message_id,
                "dlq_stream": self.dead_letter_stream,
                "retry_count": retry_count,
                "error_message": reason[:500],
            },
        )
        return dlq_id

    async def get_stats(self) -> QueueStats:
        async with self._lock:
            if self._groups:
                pending = 0
                for group in self._groups.values():
                    undelivered = sum(
                        1 for seq, _ in self._entries.values() if seq > group.last_delivered_seq
                    )
                    pending += undelivered + len(group.pending)
            else:
                pending = len(self._entries)

            return QueueStats(
                pending=pending,
                processed=sum(g.acknowledged for g in self._groups.values()),
                dead_lettered=len(self.dead_letters),
                consumer_groups=len(self._groups),
            )
