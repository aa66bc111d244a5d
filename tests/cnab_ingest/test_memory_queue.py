"""Tests for the in-process upload queue."""

import json
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from core.errors.exceptions import QueueUnavailableError
from cnab_ingest.queue import InMemoryUploadQueue, QueueStats
from cnab_ingest.queue.base import QueueMessage

GROUP = "cnab-upload-processors"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def queue(clock):
    queue = InMemoryUploadQueue(claim_idle_ms=60_000, clock=clock)
    await queue.initialize()
    await queue.initialize_consumer_group(GROUP)
    return queue


class TestEnqueueDequeue:
    @pytest.mark.asyncio
    async def test_round_trip(self, queue):
        message_id = await queue.enqueue("upload-1", "uploads/abc.txt")
        message = await queue.dequeue(GROUP, "worker-a")

        assert message.message_id == message_id
        assert message.upload_id == "upload-1"
        assert message.storage_path == "uploads/abc.txt"
        assert message.delivery_count == 1
        assert await queue.dequeue(GROUP, "worker-a") is None

    @pytest.mark.asyncio
    async def test_fifo_and_monotonic_ids(self, queue):
        ids = [await queue.enqueue(f"upload-{n}", f"uploads/{n}.txt") for n in range(3)]

        delivered = [(await queue.dequeue(GROUP, "worker-a")).upload_id for _ in range(3)]

        assert delivered == ["upload-0", "upload-1", "upload-2"]
        assert [int(i.split("-")[1]) for i in ids] == sorted(int(i.split("-")[1]) for i in ids)

    @pytest.mark.asyncio
    async def test_messages_before_group_creation_are_delivered(self, clock):
        queue = InMemoryUploadQueue(clock=clock)
        await queue.enqueue("upload-1", "uploads/a.txt")
        await queue.initialize_consumer_group(GROUP)

        assert (await queue.dequeue(GROUP, "worker-a")).upload_id == "upload-1"

    @pytest.mark.asyncio
    async def test_groups_are_independent(self, queue):
        await queue.initialize_consumer_group("auditors")
        await queue.enqueue("upload-1", "uploads/a.txt")

        assert (await queue.dequeue(GROUP, "worker-a")).upload_id == "upload-1"
        assert (await queue.dequeue("auditors", "auditor-a")).upload_id == "upload-1"

    @pytest.mark.asyncio
    async def test_unknown_group(self, queue):
        with pytest.raises(QueueUnavailableError):
            await queue.dequeue("missing", "worker-a")

    @pytest.mark.asyncio
    async def test_initialize_group_is_idempotent(self, queue):
        await queue.enqueue("upload-1", "uploads/a.txt")
        await queue.dequeue(GROUP, "worker-a")

        await queue.initialize_consumer_group(GROUP)

        assert (await queue.get_stats()).consumer_groups == 1
        assert await queue.dequeue(GROUP, "worker-a") is None

    @pytest.mark.asyncio
    async def test_wire_format(self, queue):
        await queue.enqueue("upload-1", "uploads/a.txt")
        _, body = next(iter(queue._entries.values()))

        assert set(json.loads(body)) == {"uploadId", "storagePath", "enqueuedAt"}


class TestAcknowledgeAndReclaim:
    @pytest.mark.asyncio
    async def test_unacked_message_is_reclaimed_after_idle(self, queue, clock):
        await queue.enqueue("upload-1", "uploads/a.txt")
        first = await queue.dequeue(GROUP, "worker-a")

        clock.now += 30
        assert await queue.dequeue(GROUP, "worker-b") is None

        clock.now += 31
        again = await queue.dequeue(GROUP, "worker-b")
        assert again.message_id == first.message_id
        assert again.delivery_count == 2

    @pytest.mark.asyncio
    async def test_acked_message_is_not_redelivered(self, queue, clock):
        await queue.enqueue("upload-1", "uploads/a.txt")
        message = await queue.dequeue(GROUP, "worker-a")

        await queue.acknowledge(GROUP, message.message_id)
        clock.now += 3600

        assert await queue.dequeue(GROUP, "worker-b") is None

    @pytest.mark.asyncio
    async def test_double_ack_is_harmless(self, queue):
        await queue.enqueue("upload-1", "uploads/a.txt")
        message = await queue.dequeue(GROUP, "worker-a")

        await queue.acknowledge(GROUP, message.message_id)
        await queue.acknowledge(GROUP, message.message_id)

        assert (await queue.get_stats()).processed == 1


class TestDeadLetter:
    @pytest.mark.asyncio
    async def test_dead_letter_does_not_ack(self, queue):
        metrics = MagicMock()
        queue.metrics = metrics
        await queue.enqueue("upload-1", "uploads/a.txt")
        message = await queue.dequeue(GROUP, "worker-a")

        dlq_id = await queue.move_to_dead_letter(message.message_id, "upload-1", "boom", 3)

        dlq_id_seen, entry = queue.dead_letters[0]
        assert dlq_id_seen == dlq_id
        assert entry.original_message_id == message.message_id
        assert entry.failure_reason == "boom"
        assert entry.retry_count == 3
        assert set(json.loads(entry.to_wire())) == {
            "uploadId", "originalMessageId", "failureReason", "retryCount", "failedAt",
        }
        metrics.record_dead_letter.assert_called_once()

        stats = await queue.get_stats()
        assert stats.dead_lettered == 1
        assert stats.pending == 1
        assert stats.processed == 0


class TestTrimAndStats:
    @pytest.mark.asyncio
    async def test_trim_keeps_unacknowledged_entries(self, clock):
        queue = InMemoryUploadQueue(max_stream_length=2, clock=clock)
        await queue.initialize_consumer_group(GROUP)
        for n in range(4):
            await queue.enqueue(f"upload-{n}", f"uploads/{n}.txt")

        assert len(queue._entries) == 4

        for _ in range(3):
            message = await queue.dequeue(GROUP, "worker-a")
            await queue.acknowledge(GROUP, message.message_id)

        assert len(queue._entries) == 2
        assert (await queue.dequeue(GROUP, "worker-a")).upload_id == "upload-3"

    @pytest.mark.asyncio
    async def test_trim_without_groups(self, clock):
        queue = InMemoryUploadQueue(max_stream_length=2, clock=clock)
        for n in range(5):
            await queue.enqueue(f"upload-{n}", f"uploads/{n}.txt")

        assert len(queue._entries) == 2
        assert (await queue.get_stats()).pending == 2

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        assert await queue.get_stats() == QueueStats(consumer_groups=1)

        for n in range(3):
            await queue.enqueue(f"upload-{n}", f"uploads/{n}.txt")
        message = await queue.dequeue(GROUP, "worker-a")
        await queue.acknowledge(GROUP, message.message_id)
        await queue.dequeue(GROUP, "worker-a")

        assert await queue.get_stats() == QueueStats(
            pending=2, processed=1, dead_lettered=0, consumer_groups=1
        )


class TestQueueMessage:
    def test_from_wire_aliases(self):
        body = b'{"uploadId": "u-1", "storagePath": "uploads/a.txt", "enqueuedAt": "2024-01-01T00:00:00Z"}'
        message = QueueMessage.from_wire(body, "1-1", delivery_count=2)

        assert message.upload_id == "u-1"
        assert message.message_id == "1-1"
        assert message.delivery_count == 2

    def test_rejects_missing_fields(self):
        with pytest.raises(ValueError):
            QueueMessage.from_wire(b'{"uploadId": "u-1"}', "1-1")
