"""Upload repository.

Blocking SQLAlchemy work runs in a thread via ``asyncio.to_thread`` so the
event loop keeps serving other lines while a write is in flight. Every
public coroutine is one transaction.
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from core.errors.exceptions import (
    PermanentError,
    TransientPersistenceError,
    classify_exception,
)
from core.types import ErrorCategory, ErrorClassifier

from cnab_ingest.db import Database
from cnab_ingest.models import LineHashModel, TransactionModel, UploadModel, utcnow
from cnab_ingest.types import InsertOutcome, TransactionRecord, UploadStatus

logger = logging.getLogger(__name__)

_UNIQUE_MARKERS = ("unique", "duplicate key")


class SqlErrorClassifier:
    """Maps SQLAlchemy exceptions onto pipeline error categories."""

    def classify_error(self, error: Exception) -> ErrorCategory:
        if isinstance(error, IntegrityError):
            message = str(error.orig if error.orig is not None else error).lower()
            if any(marker in message for marker in _UNIQUE_MARKERS):
                return ErrorCategory.DUPLICATE
            return ErrorCategory.PERMANENT
        if isinstance(
            error, (OperationalError, PoolTimeoutError, DisconnectionError, InterfaceError)
        ):
            return ErrorCategory.TRANSIENT
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return ErrorCategory.TRANSIENT
        return classify_exception(error)

    def is_transient(self, error: Exception) -> bool:
        return self.classify_error(error) == ErrorCategory.TRANSIENT


class UploadRepository:
    """Persistence operations the pipeline needs, as coroutines."""

    def __init__(self, database: Database, classifier: ErrorClassifier | None = None):
        self.database = database
        self.classifier = classifier or SqlErrorClassifier()

    def _translate(self, error: SQLAlchemyError, operation: str) -> Exception:
        category = self.classifier.classify_error(error)
        context = {"operation": operation}
        if category == ErrorCategory.PERMANENT:
            return PermanentError(f"{operation} failed", cause=error, context=context)
        return TransientPersistenceError(f"{operation} failed", cause=error, context=context)

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    async def line_hash_exists(self, line_hash: str) -> bool:
        return await asyncio.to_thread(self._line_hash_exists, line_hash)

    def _line_hash_exists(self, line_hash: str) -> bool:
        try:
            with self.database.session_scope() as session:
                return session.get(LineHashModel, line_hash) is not None
        except SQLAlchemyError as e:
            raise self._translate(e, "line_hash_exists") from e

    async def insert_line_uniquely(
        self,
        upload_id: str,
        idempotency_key: str,
        record: TransactionRecord,
        line_hash: str,
        line_content: str,
    ) -> InsertOutcome:
        """Insert one transaction and its line hash record atomically.

        Both rows commit together or not at all. A unique collision on
        either the idempotency key or the line hash returns DUPLICATE, so
        concurrent writers of the same content settle on one winner. Raises
        TransientPersistenceError for failures that may clear on retry.
        """
        return await asyncio.to_thread(
            self._insert_line_uniquely, upload_id, idempotency_key, record, line_hash, line_content
        )

    def _insert_line_uniquely(
        self,
        upload_id: str,
        idempotency_key: str,
        record: TransactionRecord,
        line_hash: str,
        line_content: str,
    ) -> InsertOutcome:
        try:
            with self.database.session_scope() as session:
                session.add(
                    TransactionModel(
                        upload_id=upload_id,
                        idempotency_key=idempotency_key,
                        nature_code=record.nature_code,
                        amount=record.amount,
                        signed_amount=record.signed_amount,
                        occurred_at=record.occurred_at,
                        cpf=record.cpf,
                        card=record.card,
                        store_owner=record.store_owner,
                        store_name=record.store_name,
                    )
                )
                session.add(
                    LineHashModel(line_hash=line_hash, upload_id=upload_id, line_content=line_content)
                )
            return InsertOutcome.INSERTED
        except IntegrityError as e:
            if self.classifier.classify_error(e) == ErrorCategory.DUPLICATE:
                return InsertOutcome.DUPLICATE
            raise self._translate(e, "insert_line") from e
        except SQLAlchemyError as e:
            raise self._translate(e, "insert_line") from e

    async def count_transactions(self, upload_id: str | None = None) -> int:
        return await asyncio.to_thread(self._count_transactions, upload_id)

    def _count_transactions(self, upload_id: str | None) -> int:
        with self.database.session_scope() as session:
            query = select(func.count()).select_from(TransactionModel)
            if upload_id is not None:
                query = query.where(TransactionModel.upload_id == upload_id)
            return session.scalar(query) or 0

    async def list_transactions(self, upload_id: str) -> list[TransactionModel]:
        return await asyncio.to_thread(self._list_transactions, upload_id)

    def _list_transactions(self, upload_id: str) -> list[TransactionModel]:
        with self.database.session_scope() as session:
            return list(
                session.scalars(
                    select(TransactionModel)
                    .where(TransactionModel.upload_id == upload_id)
                    .order_by(TransactionModel.idempotency_key)
                )
            )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def create_upload(
        self,
        file_hash: str,
        file_name: str,
        file_size: int,
        total_line_count: int,
        storage_path: str | None = None,
    ) -> UploadModel:
        return await asyncio.to_thread(
            self._create_upload, file_hash, file_name, file_size, total_line_count, storage_path
        )

    def _create_upload(
        self,
        file_hash: str,
        file_name: str,
        file_size: int,
        total_line_count: int,
        storage_path: str | None,
    ) -> UploadModel:
        upload = UploadModel(
            file_hash=file_hash,
            file_name=file_name,
            file_size=file_size,
            total_line_count=total_line_count,
            storage_path=storage_path,
            status=UploadStatus.PENDING.value,
            uploaded_at=utcnow(),
        )
        try:
            with self.database.session_scope() as session:
                session.add(upload)
            return upload
        except SQLAlchemyError as e:
            raise self._translate(e, "create_upload") from e

    async def get_upload(self, upload_id: str) -> UploadModel | None:
        return await asyncio.to_thread(self._get_upload, upload_id)

    def _get_upload(self, upload_id: str) -> UploadModel | None:
        with self.database.session_scope() as session:
            return session.get(UploadModel, upload_id)

    async def find_by_file_hash(self, file_hash: str) -> UploadModel | None:
        return await asyncio.to_thread(self._find_by_file_hash, file_hash)

    def _find_by_file_hash(self, file_hash: str) -> UploadModel | None:
        with self.database.session_scope() as session:
            return session.scalars(
                select(UploadModel).where(UploadModel.file_hash == file_hash)
            ).first()

    async def find_incomplete_uploads(self, started_before: datetime) -> list[UploadModel]:
        """Pending or Processing uploads whose work began before the cutoff."""
        return await asyncio.to_thread(self._find_incomplete_uploads, started_before)

    def _find_incomplete_uploads(self, started_before: datetime) -> list[UploadModel]:
        started = func.coalesce(UploadModel.processing_started_at, UploadModel.uploaded_at)
        with self.database.session_scope() as session:
            return list(
                session.scalars(
                    select(UploadModel)
                    .where(
                        UploadModel.status.in_(
                            [UploadStatus.PENDING.value, UploadStatus.PROCESSING.value]
                        )
                    )
                    .where(started < started_before)
                    .order_by(UploadModel.uploaded_at)
                )
            )

    async def mark_processing(self, upload_id: str, retry_count: int | None = None) -> None:
        values = {
            "status": UploadStatus.PROCESSING.value,
            "processing_started_at": utcnow(),
            "error_message": None,
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        await self._update_upload(upload_id, "mark_processing", **values)

    async def mark_success(
        self,
        upload_id: str,
        processed: int,
        failed: int = 0,
        skipped: int = 0,
        storage_path: str | None = None,
    ) -> None:
        values = {
            "status": UploadStatus.SUCCESS.value,
            "processed_line_count": processed,
            "failed_line_count": failed,
            "skipped_line_count": skipped,
            "processing_completed_at": utcnow(),
            "error_message": None,
        }
        if storage_path is not None:
            values["storage_path"] = storage_path
        await self._update_upload(upload_id, "mark_success", **values)

    async def mark_failure(self, upload_id: str, error_message: str) -> None:
        await self._update_upload(
            upload_id,
            "mark_failure",
            status=UploadStatus.FAILED.value,
            error_message=error_message[:2000],
            processing_completed_at=utcnow(),
        )

    async def save_checkpoint(
        self, upload_id: str, last_line: int, processed: int, failed: int, skipped: int
    ) -> None:
        await self._update_upload(
            upload_id,
            "save_checkpoint",
            last_checkpoint_line=last_line,
            last_checkpoint_at=utcnow(),
            processed_line_count=processed,
            failed_line_count=failed,
            skipped_line_count=skipped,
        )

    async def _update_upload(self, upload_id: str, operation: str, **values) -> None:
        await asyncio.to_thread(self._update_upload_sync, upload_id, operation, values)

    def _update_upload_sync(self, upload_id: str, operation: str, values: dict) -> None:
        try:
            with self.database.session_scope() as session:
                result = session.execute(
                    update(UploadModel).where(UploadModel.id == upload_id).values(**values)
                )
                if result.rowcount == 0:
                    logger.warning(
                        "Upload not found for update",
                        extra={"upload_id": upload_id, "operation": operation},
                    )
        except SQLAlchemyError as e:
            raise self._translate(e, operation) from e
