from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from squirrel.src.modules.errors import FileStorageException
from squirrel.src.modules.wiki_config import ConfigurationService

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


@dataclass
class StoredFileInfo:
    path: str
    size: int
    created_on: datetime
    modified_on: datetime


def compute_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_storage_path(file_hash: str, extension: str = "") -> str:
    """Shard stored blobs two levels deep by hash prefix."""
    ext = extension.lower() if extension else ""
    if ext and not ext.startswith("."):
        ext = "." + ext
    return f"{file_hash[0:2]}/{file_hash[2:4]}/{file_hash}{ext}"


class FileStorageStrategy(ABC):
    provider_name = ""

    @abstractmethod
    async def save(self, stream: BinaryIO | bytes, path: str) -> str:
        ...

    @abstractmethod
    async def get(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, path: str) -> bool:
        ...

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def get_info(self, path: str) -> StoredFileInfo:
        ...

    @abstractmethod
    async def copy(self, source: str, destination: str) -> str:
        ...

    @abstractmethod
    async def move(self, source: str, destination: str) -> str:
        ...

    @staticmethod
    def compute_hash(data: bytes) -> str:
        return compute_hash(data)


class LocalFileStorageStrategy(FileStorageStrategy):
    provider_name = "Local"

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, path: str) -> Path:
        if not path:
            raise FileStorageException("Storage path is required")
        candidate = (self.base_path / path.lstrip("/\\")).resolve()
        if candidate != self.base_path and self.base_path not in candidate.parents:
            raise FileStorageException("Path escapes the storage root", path)
        return candidate

    async def save(self, stream: BinaryIO | bytes, path: str) -> str:
        target = self._full_path(path)

        def write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as fh:
                if isinstance(stream, (bytes, bytearray)):
                    fh.write(stream)
                else:
                    shutil.copyfileobj(stream, fh, _CHUNK)

        try:
            await asyncio.to_thread(write)
        except OSError as exc:
            logger.exception("Failed to save %s", path)
            raise FileStorageException(f"Could not save file: {exc}", path) from exc
        logger.debug("Stored %s", path)
        return path

    async def get(self, path: str) -> bytes:
        target = self._full_path(path)
        if not target.is_file():
            raise FileStorageException(f"File not found in storage: {path}", path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise FileStorageException(f"Could not read file: {exc}", path) from exc

    async def delete(self, path: str) -> bool:
        target = self._full_path(path)
        if not target.is_file():
            return False
        try:
            target.unlink()
        except OSError as exc:
            raise FileStorageException(f"Could not delete file: {exc}", path) from exc
        logger.debug("Removed %s", path)
        return True

    async def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    async def get_info(self, path: str) -> StoredFileInfo:
        target = self._full_path(path)
        if not target.is_file():
            raise FileStorageException(f"File not found in storage: {path}", path)
        stat = target.stat()
        return StoredFileInfo(
            path=path,
            size=stat.st_size,
            created_on=datetime.fromtimestamp(stat.st_ctime, timezone.utc).replace(tzinfo=None),
            modified_on=datetime.fromtimestamp(stat.st_mtime, timezone.utc).replace(tzinfo=None),
        )

    async def copy(self, source: str, destination: str) -> str:
        src = self._full_path(source)
        dst = self._full_path(destination)
        if not src.is_file():
            raise FileStorageException(f"File not found in storage: {source}", source)
        dst.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, src, dst)
        return destination

    async def move(self, source: str, destination: str) -> str:
        src = self._full_path(source)
        dst = self._full_path(destination)
        if not src.is_file():
            raise FileStorageException(f"File not found in storage: {source}", source)
        dst.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.move, str(src), str(dst))
        return destination


async def resolve_storage_root(config: ConfigurationService) -> Path:
    raw = Path(await config.get_value("SQUIRREL_FILE_STORAGE_PATH"))
    if raw.is_absolute():
        return raw
    app_data = Path(await config.get_value("SQUIRREL_APP_DATA_PATH"))
    if app_data.parts and raw.parts[:len(app_data.parts)] == app_data.parts:
        return raw
    return app_data / raw


async def create_local_storage(config: ConfigurationService) -> LocalFileStorageStrategy:
    return LocalFileStorageStrategy(await resolve_storage_root(config))
