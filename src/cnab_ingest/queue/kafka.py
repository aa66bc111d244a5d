"""Kafka-backed upload queue (aiokafka).

Mapping onto the stream model:
- stream and dead-letter stream are two topics
- a consumer group is a Kafka consumer group with manual commits
- a message id is ``{partition}-{offset}``
- acknowledging commits ``offset + 1`` for that partition

Kafka commits are cumulative per partition, so acknowledging a message
also acknowledges earlier messages of the same partition. Each delivered
message is tracked until acknowledged; the next dequeue seeks back to any
message left unacknowledged, and acknowledge never commits past one.

Stream length is bounded by topic retention rather than entry count.
"""

import json
import logging
import ssl

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError, for_code
from aiokafka.structs import TopicPartition
from pydantic import ValidationError

from config.config import KafkaQueueConfig, QueueConfig
from core.errors.exceptions import QueueUnavailableError

from cnab_ingest.metrics import NoOpMetrics, PipelineMetrics
from cnab_ingest.queue.base import DeadLetterMessage, QueueMessage, QueueStats

logger = logging.getLogger(__name__)


def build_kafka_security_config(config: KafkaQueueConfig) -> dict:
    """Security settings for aiokafka clients. Empty for PLAINTEXT."""
    if config.security_protocol == "PLAINTEXT":
        return {}

    security_config = {"security_protocol": config.security_protocol}
    if "SSL" in config.security_protocol:
        security_config["ssl_context"] = ssl.create_default_context()
    if config.security_protocol.startswith("SASL"):
        security_config["sasl_mechanism"] = config.sasl_mechanism
        security_config["sasl_plain_username"] = config.sasl_plain_username
        security_config["sasl_plain_password"] = config.sasl_plain_password
    return security_config


def parse_message_id(message_id: str) -> tuple[int, int]:
    partition, _, offset = message_id.partition("-")
    if not partition.isdigit() or not offset.isdigit():
        raise ValueError(f"Not a Kafka message id: '{message_id}'")
    return int(partition), int(offset)


class KafkaUploadQueue:
    """UploadQueue over two Kafka topics."""

    def __init__(self, config: QueueConfig, metrics: PipelineMetrics | None = None):
        self.config = config
        self.kafka = config.kafka
        self.topic = config.stream
        self.dlq_topic = config.dead_letter_stream
        self.metrics = metrics or NoOpMetrics()
        self._producer: AIOKafkaProducer | None = None
        self._consumers: dict[str, AIOKafkaConsumer] = {}
        # consumer group -> partition -> lowest delivered, unacknowledged offset
        self._unacked: dict[str, dict[TopicPartition, int]] = {}

    def _client_config(self) -> dict:
        cfg = {
            "bootstrap_servers": self.kafka.bootstrap_servers,
            "request_timeout_ms": self.kafka.request_timeout_ms,
        }
        cfg.update(build_kafka_security_config(self.kafka))
        return cfg

    async def initialize(self) -> None:
        """Create both topics if missing and start the producer."""
        try:
            await self._ensure_topics()
            if self._producer is None:
                self._producer = AIOKafkaProducer(
                    **self._client_config(),
                    acks="all",
                    enable_idempotence=True,
                    retry_backoff_ms=1000,
                )
                await self._producer.start()
        except KafkaError as e:
            logger.error(
                "Failed to initialize Kafka upload queue",
                extra={"stream": self.topic, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError("Kafka upload queue unavailable", cause=e) from e

        logger.info(
            "Kafka upload queue ready",
            extra={"stream": self.topic, "dlq_stream": self.dlq_topic},
        )

    async def _ensure_topics(self) -> None:
        admin = AIOKafkaAdminClient(**self._client_config())
        await admin.start()
        try:
            topics = [
                NewTopic(
                    name=name,
                    num_partitions=self.kafka.num_partitions,
                    replication_factor=self.kafka.replication_factor,
                    topic_configs={"retention.ms": str(self.kafka.retention_ms)},
                )
                for name in (self.topic, self.dlq_topic)
            ]
            try:
                response = await admin.create_topics(topics)
            except TopicAlreadyExistsError:
                logger.debug("Upload topics already exist")
                return

            for topic_error in getattr(response, "topic_errors", []) or []:
                name, code = topic_error[0], topic_error[1]
                if code in (0, TopicAlreadyExistsError.errno):
                    continue
                raise for_code(code)(f"create topic {name}")
        finally:
            await admin.close()

    async def close(self) -> None:
        for group, consumer in list(self._consumers.items()):
            try:
                await consumer.stop()
            except KafkaError:
                logger.warning(
                    "Error stopping consumer", extra={"consumer_group": group}, exc_info=True
                )
        self._consumers.clear()

        if self._producer is not None:
            try:
                await self._producer.flush()
                await self._producer.stop()
            finally:
                self._producer = None

    def _require_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise QueueUnavailableError("Kafka upload queue not initialized - call initialize() first")
        return self._producer

    async def enqueue(self, upload_id: str, storage_path: str) -> str:
        message = QueueMessage(upload_id=upload_id, storage_path=storage_path)
        producer = self._require_producer()
        try:
            metadata = await producer.send_and_wait(
                self.topic, value=message.to_wire(), key=upload_id.encode("utf-8")
            )
        except KafkaError as e:
            logger.error(
                "Failed to enqueue upload",
                extra={"upload_id": upload_id, "stream": self.topic, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError("Failed to enqueue upload", cause=e) from e

        message_id = f"{metadata.partition}-{metadata.offset}"
        self.metrics.record_enqueued()
        logger.info(
            "Upload enqueued",
            extra={
                "upload_id": upload_id,
                "message_id": message_id,
                "storage_path": storage_path,
                "message_topic": self.topic,
                "message_partition": metadata.partition,
                "message_offset": metadata.offset,
            },
        )
        return message_id

    async def initialize_consumer_group(self, name: str, consumer_id: str | None = None) -> None:
        """Join ``name`` as a consumer group. Joining twice is a no-op."""
        if name in self._consumers:
            logger.info("Consumer group already exists", extra={"consumer_group": name})
            return

        consumer = AIOKafkaConsumer(
            self.topic,
            **self._client_config(),
            group_id=name,
            client_id=consumer_id or name,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        try:
            await consumer.start()
        except KafkaError as e:
            logger.error(
                "Error initializing consumer group",
                extra={"consumer_group": name, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError(f"Cannot join consumer group '{name}'", cause=e) from e

        self._consumers[name] = consumer
        logger.info(
            "Consumer group initialized",
            extra={"consumer_group": name, "stream": self.topic},
        )

    async def _consumer(self, group: str, consumer_id: str | None = None) -> AIOKafkaConsumer:
        if group not in self._consumers:
            await self.initialize_consumer_group(group, consumer_id)
        return self._consumers[group]

    def _rewind_unacknowledged(self, consumer_group: str, consumer: AIOKafkaConsumer) -> None:
        """Seek back to messages delivered earlier but never acknowledged."""
        unacked = self._unacked.get(consumer_group)
        if not unacked:
            return
        assigned = consumer.assignment()
        for tp, offset in list(unacked.items()):
            # A revoked partition resumes from its committed offset on the new owner
            if tp in assigned:
                consumer.seek(tp, offset)
                logger.warning(
                    "Rewinding to unacknowledged message",
                    extra={
                        "consumer_group": consumer_group,
                        "message_id": f"{tp.partition}-{offset}",
                    },
                )
            del unacked[tp]

    async def dequeue(self, consumer_group: str, consumer_id: str) -> QueueMessage | None:
        consumer = await self._consumer(consumer_group, consumer_id)
        self._rewind_unacknowledged(consumer_group, consumer)
        try:
            batches = await consumer.getmany(
                timeout_ms=self.kafka.poll_timeout_ms, max_records=1
            )
        except KafkaError as e:
            logger.error(
                "Failed to dequeue upload",
                extra={"consumer_group": consumer_group, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError("Failed to dequeue upload", cause=e) from e

        for tp, records in batches.items():
            for record in records:
                message_id = f"{tp.partition}-{record.offset}"
                self._unacked.setdefault(consumer_group, {}).setdefault(tp, record.offset)
                try:
                    return QueueMessage.from_wire(record.value, message_id)
                except (ValidationError, json.JSONDecodeError, UnicodeDecodeError) as e:
                    await self._dead_letter_undecodable(consumer_group, message_id, record, e)
        return None

    async def _dead_letter_undecodable(self, group, message_id, record, error) -> None:
        logger.error(
            "Undecodable queue message, moving to dead-letter stream",
            extra={"consumer_group": group, "message_id": message_id, "error_message": str(error)[:500]},
        )
        upload_id = record.key.decode("utf-8", errors="replace") if record.key else "unknown"
        await self.move_to_dead_letter(message_id, upload_id, f"Undecodable message: {error}", 0)
        await self.acknowledge(group, message_id)

    async def acknowledge(self, consumer_group: str, message_id: str) -> None:
        consumer = await self._consumer(consumer_group)
        partition, offset = parse_message_id(message_id)
        tp = TopicPartition(self.topic, partition)
        unacked = self._unacked.get(consumer_group, {})
        pending = unacked.get(tp)
        if pending is not None and pending < offset:
            logger.warning(
                "Not committing past an unacknowledged message",
                extra={
                    "consumer_group": consumer_group,
                    "message_id": message_id,
                    "pending_message_id": f"{partition}-{pending}",
                },
            )
            return

        try:
            await consumer.commit({tp: offset + 1})
        except KafkaError as e:
            logger.error(
                "Failed to acknowledge message",
                extra={"consumer_group": consumer_group, "message_id": message_id, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError("Failed to acknowledge message", cause=e) from e

        unacked.pop(tp, None)

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
        producer = self._require_producer()
        try:
            metadata = await producer.send_and_wait(
                self.dlq_topic, value=entry.to_wire(), key=upload_id.encode("utf-8")
            )
        except KafkaError as e:
            logger.error(
                "Failed to write dead-letter entry",
                extra={"upload_id": upload_id, "message_id": message_id, "error_message": str(e)},
                exc_info=True,
            )
            raise QueueUnavailableError("Failed to write dead-letter entry", cause=e) from e

        self.metrics.record_dead_letter()
        logger.warning(
            "Message moved to dead-letter stream",
            extra={
                "upload_id": upload_id,
                "message_id": message_id,
                "dlq_stream": self.dlq_topic,
                "retry_count": retry_count,
                "error_message": reason[:500],
            },
        )
        return f"{metadata.partition}-{metadata.offset}"

    async def get_stats(self) -> QueueStats:
        """Offset-based stats; returns empty stats if the broker can't be read."""
        try:
            pending = processed = dead_lettered = 0
            for consumer in self._consumers.values():
                partitions = [
                    TopicPartition(self.topic, p)
                    for p in (consumer.partitions_for_topic(self.topic) or ())
                ]
                if not partitions:
                    continue
                beginning = await consumer.beginning_offsets(partitions)
                end = await consumer.end_offsets(partitions)
                for tp in partitions:
                    committed = await consumer.committed(tp)
                    start = committed if committed is not None else beginning[tp]
                    pending += max(end[tp] - start, 0)
                    processed += max(start - beginning[tp], 0)

            if self._consumers:
                consumer = next(iter(self._consumers.values()))
                dlq_partitions = [
                    TopicPartition(self.dlq_topic, p)
                    for p in (consumer.partitions_for_topic(self.dlq_topic) or ())
                ]
                if dlq_partitions:
                    dlq_beginning = await consumer.beginning_offsets(dlq_partitions)
                    dlq_end = await consumer.end_offsets(dlq_partitions)
                    dead_lettered = sum(dlq_end[tp] - dlq_beginning[tp] for tp in dlq_partitions)

            return QueueStats(
                pending=pending,
                processed=processed,
                dead_lettered=dead_lettered,
                consumer_groups=len(self._consumers),
            )
        except Exception as e:
            logger.error(
                "Error getting queue statistics",
                extra={"error_message": str(e)},
                exc_info=True,
            )
            return QueueStats()
