"""Entry point for a submitted CNAB file."""

import hashlib
import logging

from core.logging.utilities import log_exception

from cnab_ingest.hashing import compute_file_hash
from cnab_ingest.parser import split_lines
from cnab_ingest.persistence import UploadRepository
from cnab_ingest.storage import LocalObjectStorage, upload_storage_key
from cnab_ingest.strategies import UploadProcessingStrategy
from cnab_ingest.types import ProcessingContext, UploadResult, UploadStatusCode

logger = logging.getLogger(__name__)


class UploadService:
    """
    Accepts a file, rejects empty and already-seen content, stores the raw
    bytes and hands the new upload to the configured strategy.

    Whole-file dedup is by content hash: resubmitting the same bytes under a
    different name is a 409.
    """

    def __init__(
        self,
        repository: UploadRepository,
        storage: LocalObjectStorage,
        strategy: UploadProcessingStrategy,
    ):
        self.repository = repository
        self.storage = storage
        self.strategy = strategy

    async def submit(
        self,
        content: bytes,
        file_name: str,
        context: ProcessingContext | None = None,
    ) -> UploadResult:
        context = context or ProcessingContext()

        if not content or not content.strip():
            logger.warning(
                "Rejected empty upload", extra=context.log_extra(file_name=file_name)
            )
            return UploadResult.failure(
                UploadStatusCode.BAD_REQUEST, "File was not provided or is empty."
            )

        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            return UploadResult.failure(
                UploadStatusCode.BAD_REQUEST, f"File is not valid UTF-8 text: {e}"
            )

        file_hash = compute_file_hash(content)
        existing = await self.repository.find_by_file_hash(file_hash)
        if existing is not None:
            logger.info(
                "Duplicate file rejected",
                extra=context.log_extra(
                    file_hash=file_hash, file_name=file_name, status=existing.status
                ),
            )
            return UploadResult.failure(
                UploadStatusCode.CONFLICT, "File already processed", existing.id
            )

        lines = split_lines(text)
        storage_path = upload_storage_key(hashlib.sha256(content).hexdigest())
        try:
            await self.storage.upload(storage_path, content)
            upload = await self.repository.create_upload(
                file_hash=file_hash,
                file_name=file_name,
                file_size=len(content),
                total_line_count=len(lines),
                storage_path=storage_path,
            )
        except Exception as e:
            log_exception(
                logger, e, "Failed to register upload",
                **context.log_extra(file_hash=file_hash, file_name=file_name),
            )
            return UploadResult.failure(
                UploadStatusCode.INTERNAL_SERVER_ERROR, f"Failed to register upload: {e}"
            )

        context = context.for_upload(upload.id)
        logger.info(
            "Upload registered",
            extra=context.log_extra(
                file_hash=file_hash,
                file_name=file_name,
                file_size=len(content),
                total_lines=len(lines),
                storage_path=storage_path,
            ),
        )
        return await self.strategy.process_upload(text, upload, storage_path, context)
