"""Tests for UploadService and LocalObjectStorage."""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors.exceptions import StorageError
from cnab_ingest.hashing import compute_file_hash
from cnab_ingest.service import UploadService
from cnab_ingest.storage import LocalObjectStorage, upload_storage_key
from cnab_ingest.strategies import AsynchronousProcessingStrategy, SynchronousProcessingStrategy
from cnab_ingest.types import UploadStatus, UploadStatusCode


@pytest.fixture
def sync_service(repository, storage, upload_processor):
    return UploadService(
        repository, storage, SynchronousProcessingStrategy(repository, upload_processor)
    )


class TestSubmit:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"", b"   \n\n  "])
    async def test_empty_file_is_bad_request(self, sync_service, content):
        result = await sync_service.submit(content, "empty.txt")

        assert result.status_code == UploadStatusCode.BAD_REQUEST
        assert result.message == "File was not provided or is empty."
        assert result.upload_id is None

    @pytest.mark.asyncio
    async def test_non_utf8_is_bad_request(self, sync_service):
        result = await sync_service.submit(b"\xff\xfe\x00bad", "binary.bin")

        assert result.status_code == UploadStatusCode.BAD_REQUEST

    @pytest.mark.asyncio
    async def test_sync_submit_stores_and_processes(
        self, sync_service, repository, storage, sample_lines
    ):
        content = "\n".join(sample_lines).encode("utf-8")

        result = await sync_service.submit(content, "CNAB.txt")

        assert result.status_code == UploadStatusCode.SUCCESS
        assert result.transaction_count == 3

        upload = await repository.get_upload(result.upload_id)
        key = upload_storage_key(hashlib.sha256(content).hexdigest())
        assert upload.storage_path == key
        assert upload.file_hash == compute_file_hash(content)
        assert upload.file_size == len(content)
        assert upload.total_line_count == 3
        assert upload.status == UploadStatus.SUCCESS
        assert await storage.download(key) == content

    @pytest.mark.asyncio
    async def test_same_content_is_conflict(self, sync_service, sample_line):
        content = sample_line.encode("utf-8")
        first = await sync_service.submit(content, "a.txt")

        second = await sync_service.submit(content, "renamed.txt")

        assert second.status_code == UploadStatusCode.CONFLICT
        assert second.message == "File already processed"
        assert second.upload_id == first.upload_id

    @pytest.mark.asyncio
    async def test_async_submit_is_accepted(
        self, repository, storage, memory_queue, sample_line
    ):
        service = UploadService(repository, storage, AsynchronousProcessingStrategy(memory_queue))
        await memory_queue.initialize_consumer_group("workers")

        result = await service.submit(sample_line.encode("utf-8"), "CNAB.txt")

        assert result.status_code == UploadStatusCode.ACCEPTED
        message = await memory_queue.dequeue("workers", "worker-a")
        assert message.upload_id == result.upload_id
        assert await storage.exists(message.storage_path)

    @pytest.mark.asyncio
    async def test_storage_failure_is_internal_error(self, repository, sample_line):
        storage = MagicMock()
        storage.upload = AsyncMock(side_effect=OSError("disk full"))
        strategy = MagicMock()
        strategy.process_upload = AsyncMock()
        service = UploadService(repository, storage, strategy)

        result = await service.submit(sample_line.encode("utf-8"), "CNAB.txt")

        assert result.status_code == UploadStatusCode.INTERNAL_SERVER_ERROR
        assert "disk full" in result.message
        strategy.process_upload.assert_not_awaited()
        assert await repository.find_by_file_hash(compute_file_hash(sample_line)) is None


class TestLocalObjectStorage:
    @pytest.mark.asyncio
    async def test_upload_and_download(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)

        key = await storage.upload("uploads/abc.txt", b"content")

        assert key == "uploads/abc.txt"
        assert (tmp_path / "uploads" / "abc.txt").read_bytes() == b"content"
        assert await storage.download(key) == b"content"
        assert await storage.exists(key)
        assert not list(tmp_path.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_overwrite(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)
        await storage.upload("uploads/abc.txt", b"one")
        await storage.upload("uploads/abc.txt", b"two")

        assert await storage.download("uploads/abc.txt") == b"two"

    @pytest.mark.asyncio
    async def test_missing_object(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)

        assert not await storage.exists("uploads/missing.txt")
        with pytest.raises(StorageError, match="Object not found"):
            await storage.download("uploads/missing.txt")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside.txt", "uploads/../../x"])
    async def test_rejects_keys_outside_root(self, tmp_path, key):
        storage = LocalObjectStorage(tmp_path)

        with pytest.raises(ValueError, match="Invalid storage key"):
            await storage.upload(key, b"data")

    def test_storage_key(self):
        assert upload_storage_key("ab12") == "uploads/ab12.txt"
