from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules import slugs
from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import BusinessRuleException, EntityNotFoundException, ValidationException
from squirrel.src.modules.events import CategoryChangedEvent, EventPublisher, get_event_publisher
from squirrel.src.modules.wiki_db import Category, Page, utc_now

logger = logging.getLogger(__name__)

MAX_CATEGORY_DEPTH = 3

DELETE_MOVE_TO_PARENT = "move_to_parent"
DELETE_MOVE_TO_CATEGORY = "move_to_category"
DELETE_UNCATEGORIZE = "uncategorize"
DELETE_ACTIONS = (DELETE_MOVE_TO_PARENT, DELETE_MOVE_TO_CATEGORY, DELETE_UNCATEGORIZE)


@dataclass
class CategoryDto:
    id: int
    name: str
    slug: str
    description: str | None
    parent_id: int | None
    parent_name: str | None
    page_count: int
    level: int
    full_path: str
    display_order: int
    created_by: str
    created_on: datetime
    modified_by: str | None
    modified_on: datetime | None


@dataclass
class CategoryTreeNode:
    id: int
    name: str
    slug: str
    description: str | None
    display_order: int
    page_count: int
    children: list["CategoryTreeNode"] = field(default_factory=list)

    def find(self, category_id: int) -> "CategoryTreeNode | None":
        if self.id == category_id:
            return self
        for child in self.children:
            found = child.find(category_id)
            if found is not None:
                return found
        return None


class CategoryService:
    def __init__(
        self,
        session: AsyncSession,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
    ):
        self.session = session
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()

    async def _get(self, category_id: int) -> Category:
        category = await self.session.get(Category, category_id)
        if category is None:
            raise EntityNotFoundException("Category", category_id)
        return category

    async def _children(self, parent_id: int | None) -> list[Category]:
        stmt = select(Category).order_by(Category.display_order, Category.name)
        if parent_id is None:
            stmt = stmt.where(Category.parent_category_id.is_(None))
        else:
            stmt = stmt.where(Category.parent_category_id == parent_id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def _path(self, category: Category) -> list[Category]:
        path = [category]
        seen = {category.id}
        current = category
        while current.parent_category_id is not None:
            parent = await self.session.get(Category, current.parent_category_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            path.insert(0, parent)
            current = parent
        return path

    async def _page_counts(self) -> dict[int, int]:
        rows = await self.session.execute(
            select(Page.category_id, func.count(Page.id))
            .where(Page.is_deleted.is_(False), Page.category_id.is_not(None))
            .group_by(Page.category_id)
        )
        return {category_id: count for category_id, count in rows.all()}

    async def _to_dto(self, category: Category, counts: dict[int, int] | None = None) -> CategoryDto:
        if counts is None:
            counts = await self._page_counts()
        path = await self._path(category)
        parent = path[-2] if len(path) > 1 else None
        return CategoryDto(
            id=category.id,
            name=category.name,
            slug=category.slug,
            description=category.description,
            parent_id=category.parent_category_id,
            parent_name=parent.name if parent else None,
            page_count=counts.get(category.id, 0),
            level=len(path) - 1,
            full_path=" / ".join(c.name for c in path),
            display_order=category.display_order,
            created_by=category.created_by,
            created_on=category.created_on,
            modified_by=category.modified_by,
            modified_on=category.modified_on,
        )

    async def get_by_id(self, category_id: int) -> CategoryDto:
        return await self._to_dto(await self._get(category_id))

    async def get_all(self) -> list[CategoryDto]:
        rows = await self.session.execute(select(Category).order_by(Category.display_order, Category.name))
        counts = await self._page_counts()
        return [await self._to_dto(c, counts) for c in rows.scalars().all()]

    async def get_roots(self) -> list[CategoryDto]:
        counts = await self._page_counts()
        return [await self._to_dto(c, counts) for c in await self._children(None)]

    async def get_children(self, parent_id: int) -> list[CategoryDto]:
        await self._get(parent_id)
        counts = await self._page_counts()
        return [await self._to_dto(c, counts) for c in await self._children(parent_id)]

    async def get_tree(self) -> list[CategoryTreeNode]:
        async def build() -> list[CategoryTreeNode]:
            rows = await self.session.execute(select(Category).order_by(Category.display_order, Category.name))
            categories = list(rows.scalars().all())
            counts = await self._page_counts()
            nodes = {
                c.id: CategoryTreeNode(
                    id=c.id,
                    name=c.name,
                    slug=c.slug,
                    description=c.description,
                    display_order=c.display_order,
                    page_count=counts.get(c.id, 0),
                )
                for c in categories
            }
            roots: list[CategoryTreeNode] = []
            for c in categories:
                parent = nodes.get(c.parent_category_id) if c.parent_category_id is not None else None
                (parent.children if parent else roots).append(nodes[c.id])
            return roots

        return await self.cache.get_or_create(CacheKeys.CATEGORY_TREE, build)

    async def get_subtree(self, category_id: int) -> CategoryTreeNode:
        await self._get(category_id)
        for root in await self.get_tree():
            found = root.find(category_id)
            if found is not None:
                return found
        raise EntityNotFoundException("Category", category_id)

    async def get_path(self, category_id: int) -> list[CategoryDto]:
        path = await self._path(await self._get(category_id))
        counts = await self._page_counts()
        return [await self._to_dto(c, counts) for c in path]

    async def get_full_path(self, category_id: int) -> str:
        path = await self._path(await self._get(category_id))
        return " / ".join(c.name for c in path)

    async def get_depth(self, category_id: int) -> int:
        """Number of levels from the root down to this category (a root is 1)."""
        return len(await self._path(await self._get(category_id)))

    async def get_by_path(self, path: str) -> CategoryDto | None:
        segments = [s.strip() for s in re.split(r"[/:]", path or "") if s.strip()]
        if not segments:
            return None
        parent_id: int | None = None
        current: Category | None = None
        for segment in segments:
            lowered = segment.lower()
            current = next(
                (c for c in await self._children(parent_id) if c.name.lower() == lowered or c.slug == lowered),
                None,
            )
            if current is None:
                logger.debug("Category path segment '%s' not found in '%s'", segment, path)
                return None
            parent_id = current.id
        return await self._to_dto(current)

    async def get_id_by_path(self, path: str) -> int | None:
        found = await self.get_by_path(path)
        return found.id if found else None

    async def is_name_available(self, name: str, parent_id: int | None, exclude_id: int | None = None) -> bool:
        lowered = name.strip().lower()
        for sibling in await self._children(parent_id):
            if sibling.id != exclude_id and sibling.name.lower() == lowered:
                return False
        return True

    async def _subtree_depth(self, category_id: int) -> int:
        children = await self._children(category_id)
        if not children:
            return 0
        return 1 + max([await self._subtree_depth(c.id) for c in children])

    async def _ensure_unique_name(self, name: str, parent_id: int | None, exclude_id: int | None = None) -> None:
        if not await self.is_name_available(name, parent_id, exclude_id):
            where = "root level"
            if parent_id is not None:
                where = (await self._get(parent_id)).name
            raise BusinessRuleException(
                f"Category name '{name}' already exists under {where}.", "DUPLICATE_NAME"
            ).with_context("Name", name)

    async def validate_move(self, category_id: int, new_parent_id: int | None) -> bool:
        if new_parent_id is None:
            return True
        if category_id == new_parent_id:
            return False
        current = await self.session.get(Category, new_parent_id)
        seen: set[int] = set()
        while current is not None and current.id not in seen:
            if current.id == category_id:
                return False
            seen.add(current.id)
            if current.parent_category_id is None:
                break
            current = await self.session.get(Category, current.parent_category_id)
        return True

    async def _check_depth_for_move(self, category_id: int, new_parent_id: int | None) -> None:
        if new_parent_id is None:
            return
        parent_depth = len(await self._path(await self._get(new_parent_id)))
        if parent_depth + 1 + await self._subtree_depth(category_id) > MAX_CATEGORY_DEPTH:
            raise BusinessRuleException.max_depth_exceeded(MAX_CATEGORY_DEPTH)

    async def create(
        self,
        name: str,
        description: str | None = None,
        parent_id: int | None = None,
        display_order: int = 0,
        created_by: str = "system",
    ) -> CategoryDto:
        name = (name or "").strip()
        if not name:
            raise ValidationException("Category name is required", field="name")
        if parent_id is not None:
            parent = await self._get(parent_id)
            if len(await self._path(parent)) >= MAX_CATEGORY_DEPTH:
                raise BusinessRuleException.max_depth_exceeded(MAX_CATEGORY_DEPTH)
        await self._ensure_unique_name(name, parent_id)

        now = utc_now()
        category = Category(
            name=name,
            slug=slugs.generate(name) or "category",
            description=description,
            parent_category_id=parent_id,
            display_order=display_order,
            created_by=created_by,
            created_on=now,
            modified_by=created_by,
            modified_on=now,
        )
        self.session.add(category)
        await self.session.commit()
        logger.info("Created category %s (%s) under parent %s", category.name, category.id, parent_id)
        await self.publisher.publish(
            CategoryChangedEvent(category_id=category.id, change="Created", parent_category_id=parent_id)
        )
        return await self._to_dto(category)

    async def update(
        self,
        category_id: int,
        name: str | None = None,
        description: str | None = None,
        parent_id: int | None = None,
        display_order: int | None = None,
        modified_by: str = "system",
        move: bool = False,
    ) -> CategoryDto:
        """Update fields; the parent only changes when ``move`` is set so None can mean root."""
        category = await self._get(category_id)
        target_parent = parent_id if move else category.parent_category_id
        if move and target_parent != category.parent_category_id:
            if not await self.validate_move(category_id, target_parent):
                raise BusinessRuleException.circular_reference()
            await self._check_depth_for_move(category_id, target_parent)
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationException("Category name is required", field="name")
        new_name = name or category.name
        if new_name.lower() != category.name.lower() or target_parent != category.parent_category_id:
            await self._ensure_unique_name(new_name, target_parent, exclude_id=category_id)

        if name:
            category.name = name
            category.slug = slugs.generate(name) or category.slug
        if description is not None:
            category.description = description
        if display_order is not None:
            category.display_order = display_order
        category.parent_category_id = target_parent
        category.modified_by = modified_by
        category.modified_on = utc_now()
        await self.session.commit()
        logger.info("Updated category %s (%s)", category.name, category.id)
        await self.publisher.publish(
            CategoryChangedEvent(category_id=category.id, change="Updated", parent_category_id=target_parent)
        )
        return await self._to_dto(category)

    async def move(self, category_id: int, new_parent_id: int | None, modified_by: str = "system") -> CategoryDto:
        category = await self._get(category_id)
        if not await self.validate_move(category_id, new_parent_id):
            raise BusinessRuleException.circular_reference()
        if new_parent_id is not None:
            await self._get(new_parent_id)
        await self._check_depth_for_move(category_id, new_parent_id)
        await self._ensure_unique_name(category.name, new_parent_id, exclude_id=category_id)
        category.parent_category_id = new_parent_id
        category.modified_by = modified_by
        category.modified_on = utc_now()
        await self.session.commit()
        logger.info("Moved category %s (%s) to parent %s", category.name, category.id, new_parent_id)
        await self.publisher.publish(
            CategoryChangedEvent(category_id=category.id, change="Moved", parent_category_id=new_parent_id)
        )
        return await self._to_dto(category)

    async def reorder(self, category_id: int, display_order: int) -> CategoryDto:
        category = await self._get(category_id)
        category.display_order = display_order
        await self.session.commit()
        await self.publisher.publish(
            CategoryChangedEvent(
                category_id=category.id, change="Reordered", parent_category_id=category.parent_category_id
            )
        )
        return await self._to_dto(category)

    async def can_delete(self, category_id: int) -> bool:
        category = await self.session.get(Category, category_id)
        if category is None:
            return False
        if await self._children(category_id):
            return False
        return await self.get_page_count(category_id) == 0

    async def delete(
        self,
        category_id: int,
        action: str = DELETE_MOVE_TO_PARENT,
        target_category_id: int | None = None,
    ) -> None:
        category = await self._get(category_id)
        if action not in DELETE_ACTIONS:
            raise ValidationException(f"Unknown delete action '{action}'", field="action")
        children = await self._children(category_id)
        if children:
            raise BusinessRuleException(
                f"Category has {len(children)} subcategories. Delete or move them first.", "HAS_CHILDREN"
            )

        if action == DELETE_MOVE_TO_PARENT:
            new_category_id = category.parent_category_id
        elif action == DELETE_MOVE_TO_CATEGORY:
            if target_category_id is None:
                raise ValidationException(
                    "A target category must be specified when moving pages to another category",
                    field="target_category_id",
                )
            if target_category_id == category_id:
                raise ValidationException("Target category cannot be the category being deleted", field="target_category_id")
            await self._get(target_category_id)
            new_category_id = target_category_id
        else:
            new_category_id = None

        moved = await self.session.execute(
            update(Page).where(Page.category_id == category_id).values(category_id=new_category_id)
        )
        parent_id = category.parent_category_id
        await self.session.delete(category)
        await self.session.commit()
        logger.info(
            "Deleted category %s (%s); %s page(s) reassigned to %s",
            category.name,
            category_id,
            moved.rowcount,
            new_category_id,
        )
        await self.publisher.publish(
            CategoryChangedEvent(category_id=category_id, change="Deleted", parent_category_id=parent_id)
        )

    async def _descendant_ids(self, category_id: int) -> list[int]:
        out: list[int] = []
        for child in await self._children(category_id):
            out.append(child.id)
            out.extend(await self._descendant_ids(child.id))
        return out

    async def get_page_count(self, category_id: int, include_subcategories: bool = False) -> int:
        ids = [category_id]
        if include_subcategories:
            ids.extend(await self._descendant_ids(category_id))
        total = await self.session.execute(
            select(func.count(Page.id)).where(Page.category_id.in_(ids), Page.is_deleted.is_(False))
        )
        return int(total.scalar_one())
