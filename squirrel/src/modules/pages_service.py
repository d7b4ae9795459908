from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules import slugs
from squirrel.src.modules.authorization import VISIBILITY_INHERIT
from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import (
    AuthorizationException,
    BusinessRuleException,
    EntityNotFoundException,
    ValidationException,
)
from squirrel.src.modules.events import (
    EventPublisher,
    PageCreatedEvent,
    PageDeletedEvent,
    PageUpdatedEvent,
    get_event_publisher,
)
from squirrel.src.modules.markdown_service import MarkdownService, get_markdown_service
from squirrel.src.modules.tags_service import TagService, normalize_tags
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import Category, Page, PageContent, PageTag, Tag, utc_now

logger = logging.getLogger(__name__)

HOMEPAGE_TAG = "homepage"
SYSTEM_EDITOR = "System"


@dataclass
class PageDto:
    id: int
    title: str
    slug: str
    content: str
    category_id: int | None
    category_name: str | None
    tags: list[str]
    created_by: str
    created_on: datetime
    modified_by: str
    modified_on: datetime
    is_locked: bool
    is_deleted: bool
    visibility: int
    version: int


@dataclass
class PageContentDto:
    page_id: int
    version_number: int
    text: str
    edited_by: str
    edited_on: datetime
    change_comment: str | None


@dataclass
class PageComparison:
    page_id: int
    from_version: int
    to_version: int
    diff: list[str] = field(default_factory=list)

    @property
    def unified(self) -> str:
        return "\n".join(self.diff)


def _content_dto(row: PageContent) -> PageContentDto:
    return PageContentDto(
        page_id=row.page_id,
        version_number=row.version_number,
        text=row.text,
        edited_by=row.edited_by,
        edited_on=row.edited_on,
        change_comment=row.change_comment,
    )


async def _latest_content(session: AsyncSession, page_id: int) -> PageContent | None:
    rows = await session.execute(
        select(PageContent)
        .where(PageContent.page_id == page_id)
        .order_by(PageContent.version_number.desc())
        .limit(1)
    )
    return rows.scalars().first()


async def _page_tags(session: AsyncSession, page_id: int) -> list[str]:
    rows = await session.execute(
        select(Tag.name).join(PageTag, PageTag.tag_id == Tag.id).where(PageTag.page_id == page_id).order_by(Tag.name)
    )
    return list(rows.scalars().all())


async def _category_name(session: AsyncSession, category_id: int | None) -> str | None:
    if category_id is None:
        return None
    category = await session.get(Category, category_id)
    return category.name if category else None


async def build_page_dto(session: AsyncSession, page: Page) -> PageDto:
    content = await _latest_content(session, page.id)
    return PageDto(
        id=page.id,
        title=page.title,
        slug=page.slug,
        content=content.text if content else "",
        category_id=page.category_id,
        category_name=await _category_name(session, page.category_id),
        tags=await _page_tags(session, page.id),
        created_by=page.created_by,
        created_on=page.created_on,
        modified_by=page.modified_by,
        modified_on=page.modified_on,
        is_locked=page.is_locked,
        is_deleted=page.is_deleted,
        visibility=page.visibility,
        version=content.version_number if content else 0,
    )


def page_event_fields(dto: PageDto) -> dict:
    return {
        "page_id": dto.id,
        "title": dto.title,
        "slug": dto.slug,
        "category_id": dto.category_id,
        "category_name": dto.category_name,
        "tags": list(dto.tags),
        "content": dto.content,
        "author": dto.modified_by,
        "created_on": dto.created_on,
        "modified_on": dto.modified_on,
    }


class PageService:
    def __init__(
        self,
        session: AsyncSession,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
        config: ConfigurationService | None = None,
    ):
        self.session = session
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()
        self.config = config or ConfigurationService(session)
        self.tags = TagService(session, self.cache, self.publisher)

    async def _get(self, page_id: int) -> Page:
        page = await self.session.get(Page, page_id)
        if page is None:
            raise EntityNotFoundException("Page", page_id)
        return page

    async def _dtos(self, pages: Iterable[Page]) -> list[PageDto]:
        return [await build_page_dto(self.session, page) for page in pages]

    async def get_by_id(self, page_id: int) -> PageDto:
        async def load() -> PageDto:
            return await build_page_dto(self.session, await self._get(page_id))

        return await self.cache.get_or_create(CacheKeys.page(page_id), load)

    async def get_by_slug(self, slug: str) -> PageDto | None:
        rows = await self.session.execute(select(Page).where(Page.slug == (slug or "").strip().lower()))
        page = rows.scalars().first()
        return await build_page_dto(self.session, page) if page else None

    async def get_by_title(self, title: str) -> PageDto | None:
        rows = await self.session.execute(
            select(Page).where(func.lower(Page.title) == (title or "").strip().lower(), Page.is_deleted.is_(False))
        )
        page = rows.scalars().first()
        return await build_page_dto(self.session, page) if page else None

    async def get_all(self) -> list[PageDto]:
        async def load() -> list[PageDto]:
            rows = await self.session.execute(
                select(Page).where(Page.is_deleted.is_(False)).order_by(Page.title)
            )
            return await self._dtos(rows.scalars().all())

        return await self.cache.get_or_create(CacheKeys.ALL_PAGES, load)

    async def get_by_category(self, category_id: int | None) -> list[PageDto]:
        async def load() -> list[PageDto]:
            stmt = select(Page).where(Page.is_deleted.is_(False)).order_by(Page.title)
            if category_id is None:
                stmt = stmt.where(Page.category_id.is_(None))
            else:
                stmt = stmt.where(Page.category_id == category_id)
            return await self._dtos((await self.session.execute(stmt)).scalars().all())

        return await self.cache.get_or_create(CacheKeys.pages_by_category(category_id), load)

    async def get_by_tag(self, tag: str) -> list[PageDto]:
        name = (tag or "").strip().lower()

        async def load() -> list[PageDto]:
            rows = await self.session.execute(
                select(Page)
                .join(PageTag, PageTag.page_id == Page.id)
                .join(Tag, Tag.id == PageTag.tag_id)
                .where(Tag.name == name, Page.is_deleted.is_(False))
                .order_by(Page.title)
            )
            return await self._dtos(rows.scalars().all())

        return await self.cache.get_or_create(CacheKeys.pages_by_tag(name), load)

    async def get_by_author(self, username: str) -> list[PageDto]:
        async def load() -> list[PageDto]:
            lowered = (username or "").lower()
            rows = await self.session.execute(
                select(Page)
                .where(
                    Page.is_deleted.is_(False),
                    or_(func.lower(Page.created_by) == lowered, func.lower(Page.modified_by) == lowered),
                )
                .order_by(Page.modified_on.desc())
            )
            return await self._dtos(rows.scalars().all())

        return await self.cache.get_or_create(CacheKeys.pages_by_author(username or ""), load)

    async def is_slug_available(self, slug: str, exclude_id: int | None = None) -> bool:
        stmt = select(Page.id).where(Page.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Page.id != exclude_id)
        return (await self.session.execute(stmt)).first() is None

    async def generate_slug(self, title: str, exclude_id: int | None = None) -> str:
        async def exists(candidate: str) -> bool:
            return not await self.is_slug_available(candidate, exclude_id)

        return await slugs.generate_unique(title, exists)

    async def _validate_title(self, title: str) -> str:
        clean = (title or "").strip()
        if not clean:
            raise ValidationException("Title is required", field="title")
        max_length = await self.config.get_value("SQUIRREL_MAX_PAGE_TITLE_LENGTH")
        if len(clean) > max_length:
            raise ValidationException(f"Title cannot exceed {max_length} characters", field="title")
        return clean

    async def _resolve_slug(self, slug: str | None, title: str, exclude_id: int | None = None) -> str:
        if not slug or not slug.strip():
            return await self.generate_slug(title, exclude_id)
        clean = slugs.generate(slug)
        if not slugs.is_valid(clean):
            raise ValidationException("Invalid slug", field="slug")
        if not await self.is_slug_available(clean, exclude_id):
            raise BusinessRuleException.slug_already_exists(clean)
        return clean

    async def _ensure_category(self, category_id: int | None) -> None:
        if category_id is not None and await self.session.get(Category, category_id) is None:
            raise EntityNotFoundException("Category", category_id)

    async def _replace_tags(self, page_id: int, tags: Iterable[str] | None) -> None:
        await self.session.execute(delete(PageTag).where(PageTag.page_id == page_id))
        for name in normalize_tags(tags):
            tag = await self.tags.get_or_create(name)
            self.session.add(PageTag(page_id=page_id, tag_id=tag.id))
        await self.session.flush()

    async def create(
        self,
        title: str,
        content: str = "",
        category_id: int | None = None,
        tags: Iterable[str] | None = None,
        slug: str | None = None,
        visibility: int = VISIBILITY_INHERIT,
        is_locked: bool = False,
        author: str = "system",
    ) -> PageDto:
        clean_title = await self._validate_title(title)
        resolved_slug = await self._resolve_slug(slug, clean_title)
        await self._ensure_category(category_id)

        now = utc_now()
        page = Page(
            title=clean_title,
            slug=resolved_slug,
            category_id=category_id,
            visibility=visibility,
            is_locked=is_locked,
            is_deleted=False,
            created_by=author,
            created_on=now,
            modified_by=author,
            modified_on=now,
        )
        self.session.add(page)
        await self.session.flush()
        self.session.add(
            PageContent(page_id=page.id, text=content or "", version_number=1, edited_by=author, edited_on=now)
        )
        await self._replace_tags(page.id, tags)
        await self.session.commit()
        logger.info("Created page %s (%s) by %s", page.title, page.id, author)

        dto = await build_page_dto(self.session, page)
        await self.publisher.publish(PageCreatedEvent(**page_event_fields(dto)))
        return dto

    async def update(
        self,
        page_id: int,
        title: str,
        content: str,
        category_id: int | None = None,
        tags: Iterable[str] | None = None,
        change_comment: str | None = None,
        editor: str = "system",
        editor_is_admin: bool = False,
        slug: str | None = None,
        visibility: int | None = None,
        is_locked: bool | None = None,
    ) -> PageDto:
        page = await self._get(page_id)
        if page.is_locked and not editor_is_admin:
            raise AuthorizationException("Page is locked", username=editor, required_role="Admin")

        clean_title = await self._validate_title(title)
        old_title = page.title
        if slug or clean_title != old_title:
            page.slug = await self._resolve_slug(slug, clean_title, exclude_id=page.id)
        await self._ensure_category(category_id)

        now = utc_now()
        page.title = clean_title
        page.category_id = category_id
        if visibility is not None:
            page.visibility = visibility
        if is_locked is not None:
            page.is_locked = is_locked
        page.modified_by = editor
        page.modified_on = now

        latest = await _latest_content(self.session, page.id)
        if await self.config.get_value("SQUIRREL_ENABLE_PAGE_VERSIONING") or latest is None:
            self.session.add(
                PageContent(
                    page_id=page.id,
                    text=content or "",
                    version_number=(latest.version_number + 1) if latest else 1,
                    edited_by=editor,
                    edited_on=now,
                    change_comment=change_comment,
                )
            )
        else:
            latest.text = content or ""
            latest.edited_by = editor
            latest.edited_on = now
            latest.change_comment = change_comment
        await self._replace_tags(page.id, tags)
        await self.session.commit()
        logger.info("Updated page %s (%s) by %s", page.title, page.id, editor)

        dto = await build_page_dto(self.session, page)
        await self.publisher.publish(PageUpdatedEvent(previous_title=old_title, **page_event_fields(dto)))
        if old_title != clean_title:
            await self.update_links_to_page(old_title, clean_title, exclude_id=page.id)
        return dto

    async def update_links_to_page(self, old_title: str, new_title: str, exclude_id: int | None = None) -> int:
        """Rewrite links in other pages' latest content; each rewrite becomes a new version."""
        rows = await self.session.execute(select(Page).where(Page.is_deleted.is_(False)))
        changed: list[Page] = []
        for page in rows.scalars().all():
            if page.id == exclude_id:
                continue
            latest = await _latest_content(self.session, page.id)
            if latest is None:
                continue
            updated = MarkdownService.update_page_links(latest.text, old_title, new_title)
            if updated == latest.text:
                continue
            self.session.add(
                PageContent(
                    page_id=page.id,
                    text=updated,
                    version_number=latest.version_number + 1,
                    edited_by=SYSTEM_EDITOR,
                    edited_on=utc_now(),
                    change_comment=f"Auto-updated link from '{old_title}' to '{new_title}'",
                )
            )
            changed.append(page)
        if not changed:
            return 0
        await self.session.commit()
        for page in changed:
            dto = await build_page_dto(self.session, page)
            await self.publisher.publish(PageUpdatedEvent(**page_event_fields(dto)))
        logger.info("Updated links from '%s' to '%s' in %d page(s)", old_title, new_title, len(changed))
        return len(changed)

    async def delete(self, page_id: int, deleted_by: str = "system") -> None:
        page = await self._get(page_id)
        page.is_deleted = True
        page.modified_by = deleted_by
        page.modified_on = utc_now()
        await self.session.commit()
        logger.info("Soft deleted page %s (%s)", page.title, page.id)
        dto = await build_page_dto(self.session, page)
        await self.publisher.publish(PageDeletedEvent(**page_event_fields(dto)))

    async def restore(self, page_id: int, restored_by: str = "system") -> PageDto:
        page = await self._get(page_id)
        page.is_deleted = False
        page.modified_by = restored_by
        page.modified_on = utc_now()
        await self.session.commit()
        logger.info("Restored page %s (%s)", page.title, page.id)
        dto = await build_page_dto(self.session, page)
        await self.publisher.publish(PageUpdatedEvent(**page_event_fields(dto)))
        return dto

    async def search(self, text: str) -> list[PageDto]:
        term = (text or "").strip()
        if not term:
            return []
        pattern = f"%{term}%"
        latest_versions = (
            select(PageContent.page_id, func.max(PageContent.version_number).label("v"))
            .group_by(PageContent.page_id)
            .subquery()
        )
        rows = await self.session.execute(
            select(Page)
            .join(latest_versions, latest_versions.c.page_id == Page.id)
            .join(
                PageContent,
                (PageContent.page_id == Page.id) & (PageContent.version_number == latest_versions.c.v),
            )
            .where(Page.is_deleted.is_(False), or_(Page.title.ilike(pattern), PageContent.text.ilike(pattern)))
            .order_by(Page.title)
        )
        return await self._dtos(rows.scalars().unique().all())

    async def get_home_page(self) -> PageDto | None:
        pages = await self.get_by_tag(HOMEPAGE_TAG)
        return pages[0] if pages else None

    async def get_tags(self, page_id: int) -> list[str]:
        await self._get(page_id)
        return await _page_tags(self.session, page_id)

    async def get_recently_updated(self, count: int = 10) -> list[PageDto]:
        rows = await self.session.execute(
            select(Page).where(Page.is_deleted.is_(False)).order_by(Page.modified_on.desc()).limit(count)
        )
        return await self._dtos(rows.scalars().all())

    async def lookup_by_slug(self, slug: str) -> tuple[int, str] | None:
        rows = await self.session.execute(
            select(Page.id, Page.slug).where(Page.slug == slugs.generate(slug), Page.is_deleted.is_(False))
        )
        found = rows.first()
        return (found[0], found[1]) if found else None


class PageContentService:
    def __init__(self, session: AsyncSession, publisher: EventPublisher | None = None):
        self.session = session
        self.publisher = publisher or get_event_publisher()

    async def get_latest(self, page_id: int) -> PageContentDto:
        row = await _latest_content(self.session, page_id)
        if row is None:
            raise EntityNotFoundException("PageContent", page_id)
        return _content_dto(row)

    async def get_history(self, page_id: int) -> list[PageContentDto]:
        if await self.session.get(Page, page_id) is None:
            raise EntityNotFoundException("Page", page_id)
        rows = await self.session.execute(
            select(PageContent)
            .where(PageContent.page_id == page_id)
            .order_by(PageContent.version_number.desc())
        )
        return [_content_dto(row) for row in rows.scalars().all()]

    async def _version(self, page_id: int, version: int) -> PageContent | None:
        rows = await self.session.execute(
            select(PageContent).where(PageContent.page_id == page_id, PageContent.version_number == version)
        )
        return rows.scalars().first()

    async def get_version(self, page_id: int, version: int) -> PageContentDto | None:
        row = await self._version(page_id, version)
        return _content_dto(row) if row else None

    async def revert(self, page_id: int, version: int, editor: str) -> PageDto:
        target = await self._version(page_id, version)
        if target is None:
            raise EntityNotFoundException("PageContent", f"Page {page_id}, Version {version}")
        page = await self.session.get(Page, page_id)
        if page is None:
            raise EntityNotFoundException("Page", page_id)
        latest = await _latest_content(self.session, page_id)
        now = utc_now()
        self.session.add(
            PageContent(
                page_id=page_id,
                text=target.text,
                version_number=(latest.version_number if latest else 0) + 1,
                edited_by=editor,
                edited_on=now,
                change_comment=f"Reverted to version {version}",
            )
        )
        page.modified_by = editor
        page.modified_on = now
        await self.session.commit()
        logger.info("Reverted page %s to version %s by %s", page_id, version, editor)
        dto = await build_page_dto(self.session, page)
        await self.publisher.publish(PageUpdatedEvent(**page_event_fields(dto)))
        return dto

    async def compare(self, page_id: int, from_version: int, to_version: int) -> PageComparison:
        older = await self._version(page_id, from_version)
        newer = await self._version(page_id, to_version)
        if older is None:
            raise EntityNotFoundException("PageContent", f"Page {page_id}, Version {from_version}")
        if newer is None:
            raise EntityNotFoundException("PageContent", f"Page {page_id}, Version {to_version}")
        diff = difflib.unified_diff(
            older.text.splitlines(),
            newer.text.splitlines(),
            fromfile=f"version {from_version}",
            tofile=f"version {to_version}",
            lineterm="",
        )
        return PageComparison(page_id=page_id, from_version=from_version, to_version=to_version, diff=list(diff))


class PageRenderingService:
    def __init__(self, session: AsyncSession, markdown_service: MarkdownService | None = None):
        self.session = session
        self.markdown = markdown_service or get_markdown_service()

    def render_markdown(self, text: str) -> str:
        return self.markdown.process_tokens(self.markdown.to_html(text))

    async def _slug_lookup(self, html: str) -> dict[str, int]:
        wanted = self.markdown.find_internal_slugs(html)
        if not wanted:
            return {}
        rows = await self.session.execute(
            select(Page.slug, Page.id).where(Page.slug.in_(wanted), Page.is_deleted.is_(False))
        )
        return {slug: page_id for slug, page_id in rows.all()}

    async def render(self, page: PageDto) -> str:
        html = self.render_markdown(page.content)
        return self.markdown.convert_internal_links(html, await self._slug_lookup(html))

    async def render_content(self, text: str) -> str:
        html = self.render_markdown(text)
        return self.markdown.convert_internal_links(html, await self._slug_lookup(html))
