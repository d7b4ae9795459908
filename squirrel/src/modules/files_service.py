from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Iterable, Optional, Tuple

from PIL import Image
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import VISIBILITY_INHERIT
from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import (
    EntityNotFoundException,
    FileSizeExceededException,
    FileStorageException,
    FileTypeNotAllowedException,
    ValidationException,
)
from squirrel.src.modules.events import (
    EventPublisher,
    FileDeletedEvent,
    FileMovedEvent,
    FileUpdatedEvent,
    FileUploadedEvent,
    get_event_publisher,
)
from squirrel.src.modules.file_storage import FileStorageStrategy, compute_hash, content_storage_path
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import File, FileContent, FileVersion, Folder, utc_now

logger = logging.getLogger(__name__)


def _image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.width, img.height
    except (OSError, ValueError, Image.DecompressionBombError):
        return None, None


@dataclass
class FileDto:
    id: str
    file_name: str
    file_hash: str
    file_path: str
    file_size: int
    content_type: str
    description: str | None
    folder_id: int | None
    storage_provider: str
    uploaded_by: str
    uploaded_on: datetime
    visibility: int
    current_version: int
    width: int | None = None
    height: int | None = None

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass
class FileVersionDto:
    version_number: int
    file_hash: str
    file_size: int
    created_by: str
    created_on: datetime
    change_description: str | None


@dataclass
class FileUpload:
    data: bytes
    file_name: str
    content_type: str | None = None
    folder_id: int | None = None
    description: str | None = None
    visibility: int = VISIBILITY_INHERIT


@dataclass
class FileDownload:
    data: bytes
    file_name: str
    content_type: str
    file_size: int
    width: int | None = None
    height: int | None = None


def _file_dto(row: File, dimensions: Tuple[Optional[int], Optional[int]] = (None, None)) -> FileDto:
    return FileDto(
        id=row.id,
        file_name=row.file_name,
        file_hash=row.file_hash,
        file_path=row.file_path,
        file_size=row.file_size,
        content_type=row.content_type,
        description=row.description,
        folder_id=row.folder_id,
        storage_provider=row.storage_provider,
        uploaded_by=row.uploaded_by,
        uploaded_on=row.uploaded_on,
        visibility=row.visibility,
        current_version=row.current_version,
        width=dimensions[0],
        height=dimensions[1],
    )


def _event_fields(row: File) -> dict:
    return {
        "file_id": row.id,
        "file_name": row.file_name,
        "folder_id": row.folder_id,
        "content_type": row.content_type,
        "description": row.description,
        "uploaded_by": row.uploaded_by,
        "file_size": row.file_size,
    }


def allowed_extensions(raw: str | None) -> set[str]:
    out = set()
    for part in (raw or "").split(","):
        ext = part.strip().lower()
        if ext:
            out.add(ext if ext.startswith(".") else "." + ext)
    return out


class FileService:
    def __init__(
        self,
        session: AsyncSession,
        storage: FileStorageStrategy,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
        config: ConfigurationService | None = None,
    ):
        self.session = session
        self.storage = storage
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()
        self.config = config or ConfigurationService(session)

    async def _get(self, file_id: str, include_deleted: bool = False) -> File:
        row = await self.session.get(File, file_id)
        if row is None or (row.is_deleted and not include_deleted):
            raise EntityNotFoundException("File", file_id)
        return row

    async def _ensure_folder(self, folder_id: int | None) -> None:
        if folder_id is None:
            return
        folder = await self.session.get(Folder, folder_id)
        if folder is None or folder.is_deleted:
            raise EntityNotFoundException("Folder", folder_id)

    async def _validate(self, file_name: str, size: int) -> str:
        if not file_name or not file_name.strip():
            raise ValidationException("File name is required", field="file")
        max_bytes = int(await self.config.get_value("SQUIRREL_FILE_MAX_SIZE_MB")) * 1024 * 1024
        if size > max_bytes:
            raise FileSizeExceededException(file_name, size, max_bytes)
        extension = os.path.splitext(file_name)[1].lower()
        allowed = allowed_extensions(await self.config.get_value("SQUIRREL_FILE_ALLOWED_EXTENSIONS"))
        if allowed and extension not in allowed:
            raise FileTypeNotAllowedException(file_name, extension or "(none)")
        return extension

    async def _store_content(self, data: bytes, extension: str) -> FileContent:
        """Reuse stored content for a known hash or write a new blob."""
        file_hash = compute_hash(data)
        content = await self.session.get(FileContent, file_hash)
        if content is not None and await self.storage.exists(content.storage_path):
            content.reference_count += 1
            logger.info("Reusing stored content %s (%d references)", file_hash, content.reference_count)
            return content
        path = content_storage_path(file_hash, extension)
        await self.storage.save(data, path)
        if content is None:
            content = FileContent(
                file_hash=file_hash,
                storage_path=path,
                file_size=len(data),
                storage_provider=self.storage.provider_name,
                reference_count=1,
            )
            self.session.add(content)
        else:
            content.storage_path = path
            content.reference_count += 1
        logger.info("Stored new content %s at %s", file_hash, path)
        return content

    async def _release_content(self, file_hash: str) -> None:
        """Drop one reference; remove the blob once no live file uses the hash."""
        content = await self.session.get(FileContent, file_hash)
        if content is None:
            return
        content.reference_count = max(0, content.reference_count - 1)
        live = await self.get_usage_count(file_hash)
        if live > 0:
            logger.info("Content %s retained (%d live file(s))", file_hash, live)
            return
        try:
            await self.storage.delete(content.storage_path)
        except FileStorageException as exc:
            logger.warning("Failed to delete stored content %s: %s", content.storage_path, exc)
        await self.session.delete(content)
        logger.info("Removed unreferenced content %s", file_hash)

    async def _invalidate(self, file_id: str | None = None) -> None:
        if file_id:
            self.cache.remove(CacheKeys.file(file_id))
        self.cache.remove_by_pattern(CacheKeys.FOLDER_PREFIX + "*")

    async def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str | None = None,
        folder_id: int | None = None,
        description: str | None = None,
        visibility: int = VISIBILITY_INHERIT,
        uploaded_by: str = "system",
    ) -> FileDto:
        file_name = os.path.basename((file_name or "").replace("\\", "/"))
        extension = await self._validate(file_name, len(data))
        await self._ensure_folder(folder_id)
        content = await self._store_content(data, extension)
        content_type = content_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        now = utc_now()
        row = File(
            file_hash=content.file_hash,
            file_name=file_name,
            file_path=content.storage_path,
            file_size=len(data),
            content_type=content_type,
            description=description,
            folder_id=folder_id,
            storage_provider=self.storage.provider_name,
            uploaded_by=uploaded_by,
            uploaded_on=now,
            visibility=visibility,
            current_version=1,
        )
        self.session.add(row)
        await self.session.flush()
        self.session.add(
            FileVersion(
                file_id=row.id,
                version_number=1,
                file_hash=content.file_hash,
                file_size=len(data),
                created_by=uploaded_by,
                created_on=now,
                change_description="Initial upload",
            )
        )
        await self.session.commit()
        logger.info("Uploaded %s as %s (hash %s) by %s", file_name, row.id, content.file_hash, uploaded_by)
        await self._invalidate(row.id)
        await self.publisher.publish(FileUploadedEvent(**_event_fields(row), file_hash=content.file_hash))
        return _file_dto(row, _image_dimensions(data) if content_type.startswith("image/") else (None, None))

    async def upload_many(self, uploads: Iterable[FileUpload], uploaded_by: str = "system") -> list[FileDto]:
        results = []
        for item in uploads:
            results.append(
                await self.upload(
                    item.data,
                    item.file_name,
                    item.content_type,
                    item.folder_id,
                    item.description,
                    item.visibility,
                    uploaded_by,
                )
            )
        return results

    async def get_by_id(self, file_id: str) -> FileDto:
        async def load() -> FileDto:
            return _file_dto(await self._get(file_id))

        return await self.cache.get_or_create(CacheKeys.file(file_id), load)

    async def get_by_folder(self, folder_id: int | None) -> list[FileDto]:
        stmt = select(File).where(File.is_deleted.is_(False)).order_by(File.file_name)
        if folder_id is None:
            stmt = stmt.where(File.folder_id.is_(None))
        else:
            stmt = stmt.where(File.folder_id == folder_id)
        rows = await self.session.execute(stmt)
        return [_file_dto(r) for r in rows.scalars().all()]

    async def get_by_path(self, path: str) -> FileDto:
        """Resolve ``folder/sub/name.ext`` by folder name or slug, then file name."""
        parts = [p for p in (path or "").strip("/").split("/") if p]
        if not parts:
            raise EntityNotFoundException("File", path)
        folder_id: int | None = None
        for segment in parts[:-1]:
            stmt = select(Folder).where(
                Folder.is_deleted.is_(False),
                or_(func.lower(Folder.name) == segment.lower(), Folder.slug == segment.lower()),
            )
            if folder_id is None:
                stmt = stmt.where(Folder.parent_folder_id.is_(None))
            else:
                stmt = stmt.where(Folder.parent_folder_id == folder_id)
            folder = (await self.session.execute(stmt)).scalars().first()
            if folder is None:
                raise EntityNotFoundException("File", path)
            folder_id = folder.id
        stmt = select(File).where(File.is_deleted.is_(False), func.lower(File.file_name) == parts[-1].lower())
        if folder_id is None:
            stmt = stmt.where(File.folder_id.is_(None))
        else:
            stmt = stmt.where(File.folder_id == folder_id)
        row = (await self.session.execute(stmt)).scalars().first()
        if row is None:
            raise EntityNotFoundException("File", path)
        return _file_dto(row)

    async def download(self, file_id: str) -> FileDownload:
        row = await self._get(file_id)
        data = await self.storage.get(row.file_path)
        width, height = _image_dimensions(data) if row.content_type.startswith("image/") else (None, None)
        return FileDownload(
            data=data,
            file_name=row.file_name,
            content_type=row.content_type,
            file_size=len(data),
            width=width,
            height=height,
        )

    async def update(
        self,
        file_id: str,
        file_name: str | None = None,
        description: str | None = None,
        visibility: int | None = None,
        updated_by: str = "system",
    ) -> FileDto:
        row = await self._get(file_id)
        changes: dict[str, str] = {}
        if file_name is not None and file_name.strip() and file_name.strip() != row.file_name:
            new_name = file_name.strip()
            old_ext = os.path.splitext(row.file_name)[1].lower()
            if os.path.splitext(new_name)[1].lower() != old_ext:
                await self._validate(new_name, 0)
            changes["FileName"] = f"{row.file_name} -> {new_name}"
            row.file_name = new_name
        if description is not None and description != row.description:
            changes["Description"] = f"{row.description or ''} -> {description}"
            row.description = description
        if visibility is not None and visibility != row.visibility:
            changes["Visibility"] = f"{row.visibility} -> {visibility}"
            row.visibility = visibility
        if not changes:
            return _file_dto(row)
        await self.session.commit()
        logger.info("Updated file %s by %s: %s", row.id, updated_by, ", ".join(changes))
        await self._invalidate(row.id)
        await self.publisher.publish(FileUpdatedEvent(**_event_fields(row), changes=changes))
        return _file_dto(row)

    async def upload_new_version(
        self,
        file_id: str,
        data: bytes,
        change_description: str | None = None,
        uploaded_by: str = "system",
    ) -> FileDto:
        row = await self._get(file_id)
        extension = await self._validate(row.file_name, len(data))
        new_hash = compute_hash(data)
        if new_hash == row.file_hash:
            return _file_dto(row)
        old_hash = row.file_hash
        content = await self._store_content(data, extension)
        row.current_version += 1
        row.file_hash = content.file_hash
        row.file_path = content.storage_path
        row.file_size = len(data)
        self.session.add(
            FileVersion(
                file_id=row.id,
                version_number=row.current_version,
                file_hash=content.file_hash,
                file_size=len(data),
                created_by=uploaded_by,
                created_on=utc_now(),
                change_description=change_description,
            )
        )
        await self.session.flush()
        await self._release_content(old_hash)
        await self.session.commit()
        logger.info("Uploaded version %d of %s by %s", row.current_version, row.id, uploaded_by)
        await self._invalidate(row.id)
        await self.publisher.publish(
            FileUpdatedEvent(**_event_fields(row), changes={"Version": str(row.current_version)})
        )
        return _file_dto(row)

    async def get_versions(self, file_id: str) -> list[FileVersionDto]:
        await self._get(file_id)
        rows = await self.session.execute(
            select(FileVersion).where(FileVersion.file_id == file_id).order_by(FileVersion.version_number.desc())
        )
        return [
            FileVersionDto(
                version_number=v.version_number,
                file_hash=v.file_hash,
                file_size=v.file_size,
                created_by=v.created_by,
                created_on=v.created_on,
                change_description=v.change_description,
            )
            for v in rows.scalars().all()
        ]

    async def move(self, file_id: str, folder_id: int | None, moved_by: str = "system") -> FileDto:
        row = await self._get(file_id)
        await self._ensure_folder(folder_id)
        old_folder = row.folder_id
        if old_folder == folder_id:
            return _file_dto(row)
        row.folder_id = folder_id
        await self.session.commit()
        logger.info("Moved file %s from folder %s to %s by %s", row.id, old_folder, folder_id, moved_by)
        await self._invalidate(row.id)
        await self.publisher.publish(FileMovedEvent(**_event_fields(row), old_folder_id=old_folder))
        return _file_dto(row)

    async def delete(self, file_id: str, deleted_by: str = "system") -> None:
        row = await self._get(file_id)
        row.is_deleted = True
        await self.session.flush()
        await self._release_content(row.file_hash)
        await self.session.commit()
        logger.info("Deleted file %s (%s) by %s", row.file_name, row.id, deleted_by)
        await self._invalidate(row.id)
        await self.publisher.publish(FileDeletedEvent(**_event_fields(row)))

    async def permanent_delete(self, file_id: str) -> None:
        row = await self._get(file_id, include_deleted=True)
        was_live = not row.is_deleted
        file_hash = row.file_hash
        fields = _event_fields(row)
        await self.session.delete(row)
        await self.session.flush()
        if was_live:
            await self._release_content(file_hash)
        elif await self.get_usage_count(file_hash) == 0:
            content = await self.session.get(FileContent, file_hash)
            if content is not None:
                try:
                    await self.storage.delete(content.storage_path)
                except FileStorageException as exc:
                    logger.warning("Failed to delete stored content %s: %s", content.storage_path, exc)
                await self.session.delete(content)
        await self.session.commit()
        logger.info("Permanently deleted file %s", file_id)
        await self._invalidate(file_id)
        if was_live:
            await self.publisher.publish(FileDeletedEvent(**fields))

    async def search(
        self,
        text: str | None = None,
        folder_id: int | None = None,
        content_type: str | None = None,
        uploaded_by: str | None = None,
        uploaded_after: datetime | None = None,
        uploaded_before: datetime | None = None,
    ) -> list[FileDto]:
        stmt = select(File).where(File.is_deleted.is_(False))
        if folder_id is not None:
            stmt = stmt.where(File.folder_id == folder_id)
        if text and text.strip():
            pattern = f"%{text.strip()}%"
            stmt = stmt.where(or_(File.file_name.ilike(pattern), File.description.ilike(pattern)))
        if content_type:
            stmt = stmt.where(func.lower(File.content_type) == content_type.lower())
        if uploaded_by:
            stmt = stmt.where(func.lower(File.uploaded_by) == uploaded_by.lower())
        if uploaded_after:
            stmt = stmt.where(File.uploaded_on >= uploaded_after)
        if uploaded_before:
            stmt = stmt.where(File.uploaded_on <= uploaded_before)
        rows = await self.session.execute(stmt.order_by(File.file_name))
        return [_file_dto(r) for r in rows.scalars().all()]

    async def get_usage_count(self, file_hash: str) -> int:
        rows = await self.session.execute(
            select(func.count(File.id)).where(File.file_hash == file_hash, File.is_deleted.is_(False))
        )
        return int(rows.scalar_one())
