"""Upload queue: contract, envelopes and backends."""

from config.config import QueueConfig

from cnab_ingest.metrics import PipelineMetrics
from cnab_ingest.queue.base import (
    DeadLetterMessage,
    QueueBackend,
    QueueMessage,
    QueueStats,
    UploadQueue,
)
from cnab_ingest.queue.memory import InMemoryUploadQueue


def create_queue(config: QueueConfig, metrics: PipelineMetrics | None = None) -> UploadQueue:
    """Build the queue backend named by ``config.backend``."""
    backend = QueueBackend(config.backend)
    if backend == QueueBackend.KAFKA:
        from cnab_ingest.queue.kafka import KafkaUploadQueue

        return KafkaUploadQueue(config, metrics)

    return InMemoryUploadQueue(
        stream=config.stream,
        dead_letter_stream=config.dead_letter_stream,
        max_stream_length=config.max_stream_length,
        claim_idle_ms=config.claim_idle_ms,
        metrics=metrics,
    )


__all__ = [
    "DeadLetterMessage",
    "InMemoryUploadQueue",
    "QueueBackend",
    "QueueMessage",
    "QueueStats",
    "UploadQueue",
    "create_queue",
]
