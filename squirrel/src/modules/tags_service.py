from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import BusinessRuleException, EntityNotFoundException, ValidationException
from squirrel.src.modules.events import EventPublisher, TagChangedEvent, get_event_publisher
from squirrel.src.modules.wiki_db import Page, PageTag, Tag

logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 100
CLOUD_MIN_WEIGHT = 1
CLOUD_MAX_WEIGHT = 5


def normalize_tag(name: str | None) -> str:
    return (name or "").strip().lower()


def normalize_tags(names) -> list[str]:
    out: list[str] = []
    for raw in names or []:
        clean = normalize_tag(raw)
        if clean and clean not in out:
            out.append(clean[:MAX_TAG_LENGTH])
    return out


@dataclass
class TagWithCount:
    id: int
    name: str
    page_count: int


@dataclass
class TagCloudItem:
    name: str
    count: int
    weight: int


@dataclass
class TagStats:
    total_tags: int
    unused_tags: int
    tagged_pages: int
    total_associations: int
    average_tags_per_page: float


class TagService:
    def __init__(
        self,
        session: AsyncSession,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
    ):
        self.session = session
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()

    async def _by_name(self, name: str) -> Tag | None:
        rows = await self.session.execute(select(Tag).where(Tag.name == normalize_tag(name)))
        return rows.scalars().first()

    async def _require(self, name: str) -> Tag:
        tag = await self._by_name(name)
        if tag is None:
            raise EntityNotFoundException("Tag", name)
        return tag

    async def get_all(self) -> list[TagWithCount]:
        async def load() -> list[TagWithCount]:
            live = (
                select(PageTag.tag_id, func.count(PageTag.page_id).label("n"))
                .join(Page, Page.id == PageTag.page_id)
                .where(Page.is_deleted.is_(False))
                .group_by(PageTag.tag_id)
                .subquery()
            )
            rows = await self.session.execute(
                select(Tag.id, Tag.name, func.coalesce(live.c.n, 0))
                .outerjoin(live, live.c.tag_id == Tag.id)
                .order_by(Tag.name)
            )
            return [TagWithCount(id=i, name=n, page_count=int(c)) for i, n, c in rows.all()]

        return await self.cache.get_or_create(CacheKeys.TAGS_ALL, load)

    async def get_by_name(self, name: str) -> TagWithCount | None:
        wanted = normalize_tag(name)
        return next((t for t in await self.get_all() if t.name == wanted), None)

    async def get_popular(self, count: int = 20) -> list[TagWithCount]:
        used = [t for t in await self.get_all() if t.page_count > 0]
        used.sort(key=lambda t: (-t.page_count, t.name))
        return used[:count]

    async def get_tag_cloud(self, max_tags: int = 50, min_count: int = 1) -> list[TagCloudItem]:
        tags = [t for t in await self.get_all() if t.page_count >= min_count]
        tags.sort(key=lambda t: (-t.page_count, t.name))
        tags = tags[:max_tags]
        if not tags:
            return []
        low = min(t.page_count for t in tags)
        spread = max(t.page_count for t in tags) - low
        steps = CLOUD_MAX_WEIGHT - CLOUD_MIN_WEIGHT
        items = []
        for tag in tags:
            if spread == 0:
                weight = (CLOUD_MIN_WEIGHT + CLOUD_MAX_WEIGHT) // 2
            else:
                weight = math.ceil((tag.page_count - low) / spread * steps) + CLOUD_MIN_WEIGHT
            items.append(TagCloudItem(name=tag.name, count=tag.page_count, weight=weight))
        return sorted(items, key=lambda i: i.name)

    async def get_related(self, name: str, count: int = 10) -> list[TagWithCount]:
        tag = await self._by_name(name)
        if tag is None:
            return []
        pages = select(PageTag.page_id).join(Page, Page.id == PageTag.page_id).where(
            PageTag.tag_id == tag.id, Page.is_deleted.is_(False)
        )
        rows = await self.session.execute(
            select(Tag.id, Tag.name)
            .join(PageTag, PageTag.tag_id == Tag.id)
            .where(PageTag.page_id.in_(pages), Tag.id != tag.id)
        )
        counter: Counter[tuple[int, str]] = Counter((tag_id, tag_name) for tag_id, tag_name in rows.all())
        ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0][1]))[:count]
        return [TagWithCount(id=tag_id, name=tag_name, page_count=n) for (tag_id, tag_name), n in ranked]

    async def get_for_page(self, page_id: int) -> list[str]:
        rows = await self.session.execute(
            select(Tag.name).join(PageTag, PageTag.tag_id == Tag.id).where(PageTag.page_id == page_id).order_by(Tag.name)
        )
        return list(rows.scalars().all())

    async def get_stats(self) -> TagStats:
        tags = await self.get_all()
        rows = await self.session.execute(
            select(PageTag.page_id, func.count(PageTag.tag_id))
            .join(Page, Page.id == PageTag.page_id)
            .where(Page.is_deleted.is_(False))
            .group_by(PageTag.page_id)
        )
        per_page = [int(n) for _, n in rows.all()]
        associations = sum(per_page)
        return TagStats(
            total_tags=len(tags),
            unused_tags=sum(1 for t in tags if t.page_count == 0),
            tagged_pages=len(per_page),
            total_associations=associations,
            average_tags_per_page=round(associations / len(per_page), 2) if per_page else 0.0,
        )

    async def get_or_create(self, name: str) -> Tag:
        """Fetch or stage a tag without committing; callers commit with their own change."""
        clean = normalize_tag(name)
        if not clean:
            raise ValidationException("Tag name is required", field="name")
        tag = await self._by_name(clean)
        if tag is None:
            tag = Tag(name=clean[:MAX_TAG_LENGTH])
            self.session.add(tag)
            await self.session.flush()
        return tag

    async def create(self, name: str) -> TagWithCount:
        clean = normalize_tag(name)
        if not clean:
            raise ValidationException("Tag name is required", field="name")
        if await self._by_name(clean) is not None:
            raise BusinessRuleException(f"Tag '{clean}' already exists.", "TAG_EXISTS")
        tag = await self.get_or_create(clean)
        await self.session.commit()
        logger.info("Created tag %s (%s)", tag.name, tag.id)
        await self.publisher.publish(TagChangedEvent(tag_name=tag.name, change="Created"))
        return TagWithCount(id=tag.id, name=tag.name, page_count=0)

    async def rename(self, name: str, new_name: str) -> TagWithCount:
        tag = await self._require(name)
        clean = normalize_tag(new_name)
        if not clean:
            raise ValidationException("Tag name is required", field="name")
        if clean != tag.name and await self._by_name(clean) is not None:
            raise BusinessRuleException(f"Tag name '{clean}' is already taken.", "TAG_EXISTS")
        old_name = tag.name
        tag.name = clean
        await self.session.commit()
        logger.info("Renamed tag %s to %s", old_name, clean)
        await self.publisher.publish(TagChangedEvent(tag_name=old_name, change="Renamed"))
        return await self.get_by_name(clean) or TagWithCount(id=tag.id, name=clean, page_count=0)

    async def merge(self, source: str, target: str) -> TagWithCount:
        source_tag = await self._require(source)
        target_tag = await self._require(target)
        if source_tag.id == target_tag.id:
            raise BusinessRuleException("Cannot merge a tag with itself.", "TAG_MERGE_SELF")
        tagged = await self.session.execute(select(PageTag.page_id).where(PageTag.tag_id == target_tag.id))
        already = set(tagged.scalars().all())
        links = await self.session.execute(select(PageTag).where(PageTag.tag_id == source_tag.id))
        moved = 0
        for link in links.scalars().all():
            page_id = link.page_id
            await self.session.delete(link)
            if page_id not in already:
                self.session.add(PageTag(page_id=page_id, tag_id=target_tag.id))
                already.add(page_id)
                moved += 1
        await self.session.flush()
        await self.session.delete(source_tag)
        await self.session.commit()
        logger.info("Merged tag %s into %s (%d page(s) re-tagged)", source_tag.name, target_tag.name, moved)
        await self.publisher.publish(TagChangedEvent(tag_name=source_tag.name, change="Merged"))
        return await self.get_by_name(target_tag.name) or TagWithCount(
            id=target_tag.id, name=target_tag.name, page_count=len(already)
        )

    async def delete(self, name: str) -> None:
        tag = await self._require(name)
        await self.session.execute(delete(PageTag).where(PageTag.tag_id == tag.id))
        await self.session.delete(tag)
        await self.session.commit()
        logger.info("Deleted tag %s", tag.name)
        await self.publisher.publish(TagChangedEvent(tag_name=tag.name, change="Deleted"))

    async def cleanup_unused(self) -> int:
        used = select(PageTag.tag_id).distinct()
        rows = await self.session.execute(select(Tag).where(Tag.id.not_in(used)))
        unused = list(rows.scalars().all())
        for tag in unused:
            await self.session.delete(tag)
        await self.session.commit()
        if unused:
            logger.info("Removed %d unused tag(s)", len(unused))
            await self.publisher.publish(TagChangedEvent(tag_name="*", change="Cleanup"))
        return len(unused)
