"""Builds the pipeline's components from a PipelineConfig."""

import logging
from dataclasses import dataclass

from config.config import PipelineConfig

from cnab_ingest.checkpoint import CheckpointManager
from cnab_ingest.db import Database
from cnab_ingest.line_processor import LineProcessor
from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.persistence import UploadRepository
from cnab_ingest.queue import UploadQueue, create_queue
from cnab_ingest.recovery import IncompleteUploadRecovery
from cnab_ingest.service import UploadService
from cnab_ingest.storage import LocalObjectStorage
from cnab_ingest.strategies import UploadProcessingStrategy, create_strategy
from cnab_ingest.types import LineRetryPolicy
from cnab_ingest.upload_processor import ParallelUploadProcessor
from cnab_ingest.worker import UploadWorker

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    config: PipelineConfig
    database: Database
    repository: UploadRepository
    storage: LocalObjectStorage
    queue: UploadQueue
    processor: ParallelUploadProcessor
    strategy: UploadProcessingStrategy
    service: UploadService
    metrics: PipelineMetrics

    def create_worker(self, consumer_id: str | None = None) -> UploadWorker:
        return UploadWorker(
            self.queue,
            self.repository,
            self.storage,
            self.processor,
            config=self.config.worker,
            storage_config=self.config.storage,
            consumer_group=self.config.queue.consumer_group,
            consumer_id=consumer_id,
            metrics=self.metrics,
        )

    def create_recovery(self) -> IncompleteUploadRecovery:
        return IncompleteUploadRecovery(
            self.repository,
            self.queue,
            interval_seconds=self.config.recovery.interval_seconds,
            stale_after_minutes=self.config.recovery.stale_after_minutes,
        )

    async def start(self) -> None:
        await self.queue.initialize()

    async def close(self) -> None:
        try:
            await self.queue.close()
        finally:
            self.database.dispose()


def build_pipeline(
    config: PipelineConfig,
    metrics: PipelineMetrics | None = None,
    create_tables: bool = True,
) -> Pipeline:
    """Wire every component from ``config``. Call ``start()`` before use."""
    metrics = metrics or NoOpMetrics()
    processing = config.processing

    database = Database(
        config.database.url,
        echo=config.database.echo,
        pool_pre_ping=config.database.pool_pre_ping,
    )
    if create_tables:
        database.create_tables()

    repository = UploadRepository(database)
    storage = LocalObjectStorage(config.storage.root)
    queue = create_queue(config.queue, metrics)

    processor = ParallelUploadProcessor(
        LineProcessor(repository, metrics),
        CheckpointManager(repository, metrics),
        parallel_workers=processing.parallel_workers,
        checkpoint_interval=processing.checkpoint_interval,
        retry_policy=LineRetryPolicy(
            max_retries=processing.max_retry_per_line,
            retry_delay=processing.retry_delay_ms / 1000,
            max_delay=processing.max_retry_delay_ms / 1000,
        ),
    )
    strategy = create_strategy(processing.mode, repository, processor, queue, metrics)

    logger.info(
        "Pipeline assembled: mode=%s backend=%s workers=%d",
        processing.mode,
        config.queue.backend,
        processing.parallel_workers,
    )
    return Pipeline(
        config=config,
        database=database,
        repository=repository,
        storage=storage,
        queue=queue,
        processor=processor,
        strategy=strategy,
        service=UploadService(repository, storage, strategy),
        metrics=metrics,
    )
