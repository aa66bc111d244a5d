"""Tests for the Kafka queue backend with aiokafka clients mocked out."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from aiokafka.errors import KafkaConnectionError, TopicAlreadyExistsError
from aiokafka.structs import TopicPartition

from config.config import KafkaQueueConfig, QueueConfig
from core.errors.exceptions import QueueUnavailableError
from cnab_ingest.queue import create_queue
from cnab_ingest.queue.base import QueueMessage
from cnab_ingest.queue.kafka import (
    KafkaUploadQueue,
    build_kafka_security_config,
    parse_message_id,
)

GROUP = "cnab-upload-processors"
TOPIC = "cnab-upload-queue"


@pytest.fixture
def kafka_clients():
    with patch("cnab_ingest.queue.kafka.AIOKafkaAdminClient") as admin_cls, patch(
        "cnab_ingest.queue.kafka.AIOKafkaProducer"
    ) as producer_cls, patch("cnab_ingest.queue.kafka.AIOKafkaConsumer") as consumer_cls:
        admin = admin_cls.return_value
        admin.start = AsyncMock()
        admin.close = AsyncMock()
        admin.create_topics = AsyncMock(return_value=SimpleNamespace(topic_errors=[]))

        producer = producer_cls.return_value
        producer.start = AsyncMock()
        producer.stop = AsyncMock()
        producer.flush = AsyncMock()
        producer.send_and_wait = AsyncMock(
            return_value=SimpleNamespace(partition=1, offset=41)
        )

        consumer = consumer_cls.return_value
        consumer.start = AsyncMock()
        consumer.stop = AsyncMock()
        consumer.commit = AsyncMock()
        consumer.getmany = AsyncMock(return_value={})

        yield SimpleNamespace(
            admin_cls=admin_cls,
            admin=admin,
            producer_cls=producer_cls,
            producer=producer,
            consumer_cls=consumer_cls,
            consumer=consumer,
        )


@pytest_asyncio.fixture
async def queue(kafka_clients):
    queue = KafkaUploadQueue(QueueConfig(backend="kafka"))
    await queue.initialize()
    return queue


def record(offset: int, value: bytes, key: bytes | None = b"upload-1"):
    return SimpleNamespace(offset=offset, value=value, key=key)


class TestHelpers:
    def test_parse_message_id(self):
        assert parse_message_id("2-105") == (2, 105)

    @pytest.mark.parametrize("message_id", ["", "2", "a-1", "1-b", "1700000000000-1-2"])
    def test_parse_message_id_rejects(self, message_id):
        with pytest.raises(ValueError):
            parse_message_id(message_id)

    def test_plaintext_security(self):
        assert build_kafka_security_config(KafkaQueueConfig()) == {}

    def test_sasl_ssl_security(self):
        config = KafkaQueueConfig(
            security_protocol="SASL_SSL",
            sasl_mechanism="SCRAM-SHA-512",
            sasl_plain_username="user",
            sasl_plain_password="secret",
        )

        security = build_kafka_security_config(config)

        assert security["security_protocol"] == "SASL_SSL"
        assert security["sasl_mechanism"] == "SCRAM-SHA-512"
        assert security["sasl_plain_username"] == "user"
        assert "ssl_context" in security

    def test_create_queue_selects_kafka(self, kafka_clients):
        assert isinstance(create_queue(QueueConfig(backend="kafka")), KafkaUploadQueue)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_both_topics_and_starts_producer(self, queue, kafka_clients):
        topics = kafka_clients.admin.create_topics.await_args.args[0]

        assert [t.name for t in topics] == [TOPIC, "cnab-upload-dlq"]
        assert topics[0].topic_configs == {"retention.ms": "604800000"}
        kafka_clients.admin.close.assert_awaited_once()
        kwargs = kafka_clients.producer_cls.call_args.kwargs
        assert kwargs["acks"] == "all"
        assert kwargs["enable_idempotence"] is True
        kafka_clients.producer.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_topics_are_fine(self, kafka_clients):
        kafka_clients.admin.create_topics.side_effect = TopicAlreadyExistsError()
        queue = KafkaUploadQueue(QueueConfig(backend="kafka"))

        await queue.initialize()

        kafka_clients.producer.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_broker_unreachable(self, kafka_clients):
        kafka_clients.admin.start.side_effect = KafkaConnectionError()
        queue = KafkaUploadQueue(QueueConfig(backend="kafka"))

        with pytest.raises(QueueUnavailableError):
            await queue.initialize()

    @pytest.mark.asyncio
    async def test_enqueue_before_initialize(self, kafka_clients):
        with pytest.raises(QueueUnavailableError, match="not initialized"):
            await KafkaUploadQueue(QueueConfig(backend="kafka")).enqueue("u", "uploads/a.txt")


class TestProduceConsume:
    @pytest.mark.asyncio
    async def test_enqueue(self, queue, kafka_clients):
        message_id = await queue.enqueue("upload-1", "uploads/a.txt")

        assert message_id == "1-41"
        args, kwargs = kafka_clients.producer.send_and_wait.await_args
        assert args == (TOPIC,)
        assert kwargs["key"] == b"upload-1"
        body = json.loads(kwargs["value"])
        assert body["uploadId"] == "upload-1"
        assert body["storagePath"] == "uploads/a.txt"

    @pytest.mark.asyncio
    async def test_enqueue_failure(self, queue, kafka_clients):
        kafka_clients.producer.send_and_wait.side_effect = KafkaConnectionError()

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue("upload-1", "uploads/a.txt")

    @pytest.mark.asyncio
    async def test_consumer_group_settings(self, queue, kafka_clients):
        await queue.initialize_consumer_group(GROUP)
        await queue.initialize_consumer_group(GROUP)

        kafka_clients.consumer_cls.assert_called_once()
        args, kwargs = kafka_clients.consumer_cls.call_args
        assert args == (TOPIC,)
        assert kwargs["group_id"] == GROUP
        assert kwargs["enable_auto_commit"] is False
        assert kwargs["auto_offset_reset"] == "earliest"

    @pytest.mark.asyncio
    async def test_dequeue_and_acknowledge(self, queue, kafka_clients):
        body = QueueMessage(upload_id="upload-1", storage_path="uploads/a.txt").to_wire()
        kafka_clients.consumer.getmany.return_value = {
            TopicPartition(TOPIC, 2): [record(7, body)]
        }
        await queue.initialize_consumer_group(GROUP)

        message = await queue.dequeue(GROUP, "worker-a")
        await queue.acknowledge(GROUP, message.message_id)

        assert message.message_id == "2-7"
        assert message.upload_id == "upload-1"
        kafka_clients.consumer.getmany.assert_awaited_with(timeout_ms=1000, max_records=1)
        kafka_clients.consumer.commit.assert_awaited_once_with({TopicPartition(TOPIC, 2): 8})

    @pytest.mark.asyncio
    async def test_dequeue_empty(self, queue):
        assert await queue.dequeue(GROUP, "worker-a") is None

    @pytest.mark.asyncio
    async def test_undecodable_message_is_dead_lettered(self, queue, kafka_clients):
        kafka_clients.consumer.getmany.return_value = {
            TopicPartition(TOPIC, 0): [record(3, b"not json")]
        }

        assert await queue.dequeue(GROUP, "worker-a") is None

        dlq_call = kafka_clients.producer.send_and_wait.await_args
        assert dlq_call.args == ("cnab-upload-dlq",)
        entry = json.loads(dlq_call.kwargs["value"])
        assert entry["originalMessageId"] == "0-3"
        assert entry["uploadId"] == "upload-1"
        kafka_clients.consumer.commit.assert_awaited_once_with({TopicPartition(TOPIC, 0): 4})

    @pytest.mark.asyncio
    async def test_move_to_dead_letter_does_not_commit(self, queue, kafka_clients):
        metrics = MagicMock()
        queue.metrics = metrics

        dlq_id = await queue.move_to_dead_letter("2-7", "upload-1", "boom", 3)

        assert dlq_id == "1-41"
        entry = json.loads(kafka_clients.producer.send_and_wait.await_args.kwargs["value"])
        assert entry["failureReason"] == "boom"
        assert entry["retryCount"] == 3
        kafka_clients.consumer.commit.assert_not_awaited()
        metrics.record_dead_letter.assert_called_once()

    @pytest.mark.asyncio
    async def test_unacknowledged_message_is_redelivered(self, queue, kafka_clients):
        tp = TopicPartition(TOPIC, 2)
        body = QueueMessage(upload_id="upload-1", storage_path="uploads/a.txt").to_wire()
        consumer = kafka_clients.consumer
        consumer.assignment = MagicMock(return_value={tp})
        consumer.seek = MagicMock()
        consumer.getmany.return_value = {tp: [record(5, body)]}

        message = await queue.dequeue(GROUP, "worker-a")
        kafka_clients.producer.send_and_wait.side_effect = KafkaConnectionError()
        with pytest.raises(QueueUnavailableError):
            await queue.move_to_dead_letter(message.message_id, "upload-1", "boom", 3)

        await queue.dequeue(GROUP, "worker-a")

        consumer.seek.assert_called_once_with(tp, 5)
        consumer.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_acknowledge_never_commits_past_unacknowledged_message(
        self, queue, kafka_clients
    ):
        tp = TopicPartition(TOPIC, 2)
        body = QueueMessage(upload_id="upload-1", storage_path="uploads/a.txt").to_wire()
        kafka_clients.consumer.getmany.return_value = {tp: [record(5, body)]}

        await queue.dequeue(GROUP, "worker-a")
        await queue.acknowledge(GROUP, "2-6")

        kafka_clients.consumer.commit.assert_not_awaited()

        await queue.acknowledge(GROUP, "2-5")
        await queue.acknowledge(GROUP, "2-6")

        assert [c.args[0] for c in kafka_clients.consumer.commit.await_args_list] == [
            {tp: 6},
            {tp: 7},
        ]

    @pytest.mark.asyncio
    async def test_revoked_partition_is_not_rewound(self, queue, kafka_clients):
        tp = TopicPartition(TOPIC, 2)
        body = QueueMessage(upload_id="upload-1", storage_path="uploads/a.txt").to_wire()
        consumer = kafka_clients.consumer
        consumer.assignment = MagicMock(return_value=set())
        consumer.seek = MagicMock()
        consumer.getmany.return_value = {tp: [record(5, body)]}

        await queue.dequeue(GROUP, "worker-a")
        consumer.getmany.return_value = {}
        await queue.dequeue(GROUP, "worker-a")

        consumer.seek.assert_not_called()

    @pytest.mark.asyncio
    async def test_close(self, queue, kafka_clients):
        await queue.initialize_consumer_group(GROUP)

        await queue.close()

        kafka_clients.consumer.stop.assert_awaited_once()
        kafka_clients.producer.flush.assert_awaited_once()
        kafka_clients.producer.stop.assert_awaited_once()


class TestStats:
    @pytest.mark.asyncio
    async def test_offset_based_stats(self, queue, kafka_clients):
        consumer = kafka_clients.consumer
        consumer.partitions_for_topic = MagicMock(side_effect=lambda topic: {0})
        tp, dlq_tp = TopicPartition(TOPIC, 0), TopicPartition("cnab-upload-dlq", 0)
        consumer.beginning_offsets = AsyncMock(
            side_effect=lambda parts: {p: 0 for p in parts}
        )
        consumer.end_offsets = AsyncMock(
            side_effect=lambda parts: {tp: 10, dlq_tp: 2}
        )
        consumer.committed = AsyncMock(return_value=6)
        await queue.initialize_consumer_group(GROUP)

        stats = await queue.get_stats()

        assert (stats.pending, stats.processed, stats.dead_lettered) == (4, 6, 2)
        assert stats.consumer_groups == 1

    @pytest.mark.asyncio
    async def test_stats_on_broker_error(self, queue, kafka_clients):
        kafka_clients.consumer.partitions_for_topic = MagicMock(
            side_effect=KafkaConnectionError()
        )
        await queue.initialize_consumer_group(GROUP)

        stats = await queue.get_stats()

        assert stats.pending == 0
        assert stats.consumer_groups == 0
