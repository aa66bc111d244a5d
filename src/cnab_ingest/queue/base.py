"""Upload queue contract and wire envelopes.

The queue is an append-only stream read through named consumer groups with
at-least-once delivery: a dequeued message stays pending for its group
until acknowledged. Messages that exhaust processing are copied to a
separate dead-letter stream; the copy never acknowledges the original.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(UTC)


class QueueMessage(BaseModel):
    """Envelope for one queued upload.

    Wire format (JSON): ``{"uploadId", "storagePath", "enqueuedAt"}``.
    ``message_id`` and ``delivery_count`` are assigned by the broker on
    delivery and are not part of the body.
    """

    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="uploadId", min_length=1)
    storage_path: str = Field(..., alias="storagePath", min_length=1)
    enqueued_at: datetime = Field(default_factory=_now, alias="enqueuedAt")
    message_id: str | None = Field(default=None, exclude=True)
    delivery_count: int = Field(default=1, exclude=True)

    def to_wire(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_wire(
        cls, data: bytes | str, message_id: str, delivery_count: int = 1
    ) -> "QueueMessage":
        message = cls.model_validate_json(data)
        return message.model_copy(
            update={"message_id": message_id, "delivery_count": delivery_count}
        )


class DeadLetterMessage(BaseModel):
    """Dead-letter entry.

    Wire format (JSON): ``{"uploadId", "originalMessageId", "failureReason",
    "retryCount", "failedAt"}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="uploadId")
    original_message_id: str = Field(..., alias="originalMessageId")
    failure_reason: str = Field(..., alias="failureReason")
    retry_count: int = Field(..., alias="retryCount", ge=0)
    failed_at: datetime = Field(default_factory=_now, alias="failedAt")

    def to_wire(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    processed: int = 0
    dead_lettered: int = 0
    consumer_groups: int = 0


class UploadQueue(Protocol):
    """Operations the pipeline needs from a durable broker."""

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def enqueue(self, upload_id: str, storage_path: str) -> str: ...

    async def dequeue(self, consumer_group: str, consumer_id: str) -> QueueMessage | None: ...

    async def acknowledge(self, consumer_group: str, message_id: str) -> None: ...

    async def move_to_dead_letter(
        self, message_id: str, upload_id: str, reason: str, retry_count: int
    ) -> str: ...

    async def initialize_consumer_group(self, name: str) -> None: ...

    async def get_stats(self) -> QueueStats: ...


class QueueBackend(StrEnum):
    MEMORY = "memory"
    KAFKA = "kafka"
