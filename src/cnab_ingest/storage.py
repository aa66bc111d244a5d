"""Raw upload storage on the local filesystem.

Keys are relative POSIX paths (``uploads/<hex>.txt``). The worker reads
files back by key, so a key must never escape the storage root.
"""

import asyncio
import logging
from pathlib import Path, PurePosixPath

from core.errors.exceptions import StorageError

logger = logging.getLogger(__name__)


def upload_storage_key(file_hash_hex: str) -> str:
    return f"uploads/{file_hash_hex}.txt"


class LocalObjectStorage:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if not key or relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Invalid storage key: '{key}'")
        return self.root.joinpath(*relative.parts)

    async def upload(self, key: str, content: bytes) -> str:
        path = self._path(key)
        await asyncio.to_thread(self._write, path, content)
        logger.debug(
            "Stored upload content",
            extra={"storage_path": key, "file_size": len(content)},
        )
        return key

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(path)

    async def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}", cause=e) from e
        except OSError as e:
            raise StorageError(f"Failed to read object: {key}", cause=e) from e

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)
