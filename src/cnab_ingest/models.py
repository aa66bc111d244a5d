"""SQLAlchemy models for uploads, transactions and line hashes.

The two unique constraints (``transactions.idempotency_key`` and
``line_hashes.line_hash``) are what decide which writer wins when the same
line is processed twice.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cnab_ingest.types import UploadStatus


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base for all pipeline models."""

    type_annotation_map = {
        Decimal: Numeric(18, 2),
        datetime: DateTime(timezone=True),
    }


class UploadModel(Base):
    """One submitted file. Aggregate root for progress tracking."""

    __tablename__ = "uploads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    file_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploaded_at: Mapped[datetime] = mapped_column(default=utcnow)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UploadStatus.PENDING.value, index=True
    )
    total_line_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_line_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_line_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_line_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_checkpoint_line: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_checkpoint_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processing_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def resume_line(self) -> int:
        """First line index not yet covered by a checkpoint."""
        if self.last_checkpoint_line is None:
            return 0
        return self.last_checkpoint_line + 1

    def __repr__(self) -> str:
        return f"<UploadModel {self.id} {self.status} {self.processed_line_count}/{self.total_line_count}>"


class TransactionModel(Base):
    """One persisted CNAB line. Never mutated after insert."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_upload_id", "upload_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    upload_id: Mapped[str] = mapped_column(ForeignKey("uploads.id"), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    nature_code: Mapped[str] = mapped_column(String(1), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    signed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    cpf: Mapped[str] = mapped_column(String(11), nullable=False)
    card: Mapped[str] = mapped_column(String(12), nullable=False)
    store_owner: Mapped[str] = mapped_column(String(14), nullable=False)
    store_name: Mapped[str] = mapped_column(String(19), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class LineHashModel(Base):
    """First upload a given line content was seen in."""

    __tablename__ = "line_hashes"

    line_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    upload_id: Mapped[str] = mapped_column(ForeignKey("uploads.id"), nullable=False)
    line_content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
