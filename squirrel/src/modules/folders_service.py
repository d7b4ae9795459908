from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules import slugs
from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import (
    DuplicateFolderException,
    EntityNotFoundException,
    FolderDepthExceededException,
    FolderException,
    ValidationException,
)
from squirrel.src.modules.events import EventPublisher, FolderChangedEvent, get_event_publisher
from squirrel.src.modules.wiki_db import File, Folder, utc_now

if TYPE_CHECKING:
    from squirrel.src.modules.files_service import FileService

logger = logging.getLogger(__name__)

MAX_FOLDER_DEPTH = 10


@dataclass
class FolderDto:
    id: int
    name: str
    slug: str
    description: str | None
    parent_id: int | None
    display_order: int
    created_by: str
    created_on: datetime
    file_count: int
    subfolder_count: int


@dataclass
class FolderTreeNode:
    id: int
    name: str
    slug: str
    file_count: int
    children: list["FolderTreeNode"] = field(default_factory=list)


class FolderService:
    def __init__(
        self,
        session: AsyncSession,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
        files: "FileService | None" = None,
    ):
        self.session = session
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()
        self.files = files

    async def _get(self, folder_id: int) -> Folder:
        folder = await self.session.get(Folder, folder_id)
        if folder is None or folder.is_deleted:
            raise EntityNotFoundException("Folder", folder_id)
        return folder

    async def _children(self, parent_id: int | None) -> list[Folder]:
        stmt = select(Folder).where(Folder.is_deleted.is_(False)).order_by(Folder.display_order, Folder.name)
        if parent_id is None:
            stmt = stmt.where(Folder.parent_folder_id.is_(None))
        else:
            stmt = stmt.where(Folder.parent_folder_id == parent_id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def _file_counts(self) -> dict[int, int]:
        rows = await self.session.execute(
            select(File.folder_id, func.count(File.id))
            .where(File.is_deleted.is_(False), File.folder_id.is_not(None))
            .group_by(File.folder_id)
        )
        return {folder_id: n for folder_id, n in rows.all()}

    async def _to_dto(self, folder: Folder, counts: dict[int, int] | None = None) -> FolderDto:
        if counts is None:
            counts = await self._file_counts()
        return FolderDto(
            id=folder.id,
            name=folder.name,
            slug=folder.slug,
            description=folder.description,
            parent_id=folder.parent_folder_id,
            display_order=folder.display_order,
            created_by=folder.created_by,
            created_on=folder.created_on,
            file_count=counts.get(folder.id, 0),
            subfolder_count=len(await self._children(folder.id)),
        )

    async def _invalidate(self) -> None:
        self.cache.remove_by_pattern(CacheKeys.FOLDER_PREFIX + "*")

    async def get(self, folder_id: int) -> FolderDto:
        return await self._to_dto(await self._get(folder_id))

    async def get_by_slug(self, slug: str) -> FolderDto | None:
        rows = await self.session.execute(
            select(Folder).where(Folder.slug == slug, Folder.is_deleted.is_(False)).order_by(Folder.id)
        )
        folder = rows.scalars().first()
        return await self._to_dto(folder) if folder else None

    async def get_roots(self) -> list[FolderDto]:
        counts = await self._file_counts()
        return [await self._to_dto(f, counts) for f in await self._children(None)]

    async def get_children(self, parent_id: int) -> list[FolderDto]:
        await self._get(parent_id)
        counts = await self._file_counts()
        return [await self._to_dto(f, counts) for f in await self._children(parent_id)]

    async def get_tree(self) -> list[FolderTreeNode]:
        async def build() -> list[FolderTreeNode]:
            rows = await self.session.execute(
                select(Folder).where(Folder.is_deleted.is_(False)).order_by(Folder.display_order, Folder.name)
            )
            folders = list(rows.scalars().all())
            counts = await self._file_counts()
            nodes = {
                f.id: FolderTreeNode(id=f.id, name=f.name, slug=f.slug, file_count=counts.get(f.id, 0))
                for f in folders
            }
            roots: list[FolderTreeNode] = []
            for f in folders:
                parent = nodes.get(f.parent_folder_id) if f.parent_folder_id is not None else None
                (parent.children if parent else roots).append(nodes[f.id])
            return roots

        return await self.cache.get_or_create(CacheKeys.FOLDER_TREE, build)

    async def get_breadcrumb(self, folder_id: int) -> list[FolderDto]:
        current: Folder | None = await self._get(folder_id)
        trail: list[Folder] = []
        seen: set[int] = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            trail.insert(0, current)
            current = await self.session.get(Folder, current.parent_folder_id) if current.parent_folder_id else None
        counts = await self._file_counts()
        return [await self._to_dto(f, counts) for f in trail]

    async def get_depth(self, folder_id: int) -> int:
        """Number of ancestors; a root folder has depth 0."""
        return len(await self.get_breadcrumb(folder_id)) - 1

    async def _subtree_depth(self, folder_id: int) -> int:
        children = await self._children(folder_id)
        if not children:
            return 0
        return 1 + max([await self._subtree_depth(c.id) for c in children])

    async def _ensure_unique_name(self, name: str, parent_id: int | None, exclude_id: int | None = None) -> None:
        for sibling in await self._children(parent_id):
            if sibling.id != exclude_id and sibling.name.lower() == name.lower():
                raise DuplicateFolderException(name, parent_id)

    async def create(
        self,
        name: str,
        parent_id: int | None = None,
        description: str | None = None,
        display_order: int = 0,
        created_by: str = "system",
    ) -> FolderDto:
        name = (name or "").strip()
        if not name:
            raise ValidationException("Folder name is required", field="name")
        if parent_id is not None:
            await self._get(parent_id)
            depth = await self.get_depth(parent_id)
            if depth >= MAX_FOLDER_DEPTH - 1:
                raise FolderDepthExceededException(depth + 1, MAX_FOLDER_DEPTH)
        await self._ensure_unique_name(name, parent_id)

        folder = Folder(
            name=name,
            slug=slugs.generate(name),
            description=description,
            parent_folder_id=parent_id,
            display_order=display_order,
            created_by=created_by,
            created_on=utc_now(),
        )
        self.session.add(folder)
        await self.session.commit()
        logger.info("Created folder %s (%s) under %s", folder.name, folder.id, parent_id)
        await self._invalidate()
        await self.publisher.publish(
            FolderChangedEvent(folder_id=folder.id, change="Created", parent_folder_id=parent_id)
        )
        return await self._to_dto(folder)

    async def update(
        self,
        folder_id: int,
        name: str | None = None,
        description: str | None = None,
        display_order: int | None = None,
    ) -> FolderDto:
        folder = await self._get(folder_id)
        if name is not None:
            clean = name.strip()
            if not clean:
                raise ValidationException("Folder name is required", field="name")
            if clean.lower() != folder.name.lower():
                await self._ensure_unique_name(clean, folder.parent_folder_id, exclude_id=folder.id)
            folder.name = clean
            folder.slug = slugs.generate(clean)
        if description is not None:
            folder.description = description
        if display_order is not None:
            folder.display_order = display_order
        await self.session.commit()
        await self._invalidate()
        await self.publisher.publish(
            FolderChangedEvent(folder_id=folder.id, change="Updated", parent_folder_id=folder.parent_folder_id)
        )
        return await self._to_dto(folder)

    async def move(self, folder_id: int, new_parent_id: int | None) -> FolderDto:
        folder = await self._get(folder_id)
        if new_parent_id is not None:
            if new_parent_id == folder_id:
                raise FolderException("A folder cannot be moved into itself", folder_id, folder.name)
            await self._get(new_parent_id)
            ancestors = [f.id for f in await self.get_breadcrumb(new_parent_id)]
            if folder_id in ancestors:
                raise FolderException("Cannot move a folder into one of its descendants", folder_id, folder.name)
            new_depth = await self.get_depth(new_parent_id) + 1
            subtree = await self._subtree_depth(folder_id)
            if new_depth + subtree + 1 > MAX_FOLDER_DEPTH:
                raise FolderDepthExceededException(new_depth + subtree + 1, MAX_FOLDER_DEPTH)
        await self._ensure_unique_name(folder.name, new_parent_id, exclude_id=folder.id)
        folder.parent_folder_id = new_parent_id
        await self.session.commit()
        logger.info("Moved folder %s (%s) to parent %s", folder.name, folder.id, new_parent_id)
        await self._invalidate()
        await self.publisher.publish(
            FolderChangedEvent(folder_id=folder.id, change="Moved", parent_folder_id=new_parent_id)
        )
        return await self._to_dto(folder)

    async def _file_ids(self, folder_id: int) -> list[str]:
        rows = await self.session.execute(
            select(File.id).where(File.folder_id == folder_id, File.is_deleted.is_(False))
        )
        return list(rows.scalars().all())

    async def delete(self, folder_id: int, recursive: bool = False, deleted_by: str = "system") -> None:
        folder = await self._get(folder_id)
        children = await self._children(folder_id)
        if children and not recursive:
            raise FolderException(
                "Folder has subfolders. Set recursive=true to delete them", folder_id, folder.name
            ).with_context("RuleCode", "HAS_CHILDREN")
        file_ids = await self._file_ids(folder_id)
        if file_ids and not recursive:
            raise FolderException(
                "Folder contains files. Set recursive=true to delete them", folder_id, folder.name
            ).with_context("RuleCode", "HAS_FILES")

        for child in children:
            await self.delete(child.id, recursive=True, deleted_by=deleted_by)
        if file_ids:
            if self.files is None:
                raise FolderException("Deleting folder contents needs a file service", folder_id, folder.name)
            for file_id in file_ids:
                await self.files.delete(file_id, deleted_by=deleted_by)

        folder.is_deleted = True
        await self.session.commit()
        logger.info("Deleted folder %s (%s) by %s", folder.name, folder.id, deleted_by)
        await self._invalidate()
        await self.publisher.publish(
            FolderChangedEvent(folder_id=folder.id, change="Deleted", parent_folder_id=folder.parent_folder_id)
        )
