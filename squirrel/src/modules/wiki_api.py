import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.api_support import allow_anonymous_reading, require_reader, visibility_value
from squirrel.src.modules.authorization import Principal, can_delete_page, can_view_page
from squirrel.src.modules.errors import AuthorizationException
from squirrel.src.modules.pages_service import (
    PageContentService,
    PageDto,
    PageRenderingService,
    PageService,
)
from squirrel.src.modules.wiki_auth import get_current_user, require_admin, require_editor
from squirrel.src.modules.wiki_db import get_session

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api/pages",
    tags=["pages"],
)


class PagePayload(BaseModel):
    title: str
    content: str = ""
    category_id: int | None = None
    tags: list[str] = []
    slug: str | None = None
    visibility: Any = 0
    is_locked: bool = False
    change_comment: str | None = None


class PreviewPayload(BaseModel):
    content: str


class PageOut(BaseModel):
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


class PageSummaryOut(BaseModel):
    id: int
    title: str
    slug: str
    category_name: str | None
    tags: list[str]
    modified_by: str
    modified_on: datetime


class RenderedPageOut(BaseModel):
    page: PageOut
    html: str


class PageVersionOut(BaseModel):
    page_id: int
    version_number: int
    text: str
    edited_by: str
    edited_on: datetime
    change_comment: str | None


class PageComparisonOut(BaseModel):
    page_id: int
    from_version: int
    to_version: int
    diff: list[str]


def _page_out(page: PageDto) -> PageOut:
    return PageOut(**asdict(page))


def _summary_out(page: PageDto) -> PageSummaryOut:
    return PageSummaryOut(
        id=page.id,
        title=page.title,
        slug=page.slug,
        category_name=page.category_name,
        tags=page.tags,
        modified_by=page.modified_by,
        modified_on=page.modified_on,
    )


async def _readable_page(session: AsyncSession, page: PageDto | None, principal: Principal) -> PageDto:
    if page is None or (page.is_deleted and not principal.is_admin):
        raise HTTPException(status_code=404, detail="Page not found")
    if not page.is_deleted:
        require_reader(principal, can_view_page(page, principal, await allow_anonymous_reading(session)))
    return page


async def _visible(session: AsyncSession, pages: list[PageDto], principal: Principal) -> list[PageDto]:
    allow = await allow_anonymous_reading(session)
    return [p for p in pages if can_view_page(p, principal, allow)]


@router.get("", response_model=list[PageSummaryOut])
async def list_pages(
    category_id: int | None = Query(default=None),
    tag: str | None = Query(default=None),
    author: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    service = PageService(session)
    if tag:
        pages = await service.get_by_tag(tag)
    elif author:
        pages = await service.get_by_author(author)
    elif category_id is not None:
        pages = await service.get_by_category(category_id)
    else:
        pages = await service.get_all()
    return [_summary_out(p) for p in await _visible(session, pages, principal)]


@router.get("/home", response_model=PageOut)
async def get_home_page(
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    page = await PageService(session).get_home_page()
    return _page_out(await _readable_page(session, page, principal))


@router.get("/recent", response_model=list[PageSummaryOut])
async def recent_pages(
    count: int = Query(default=10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    pages = await PageService(session).get_recently_updated(count)
    return [_summary_out(p) for p in await _visible(session, pages, principal)]


@router.get("/slug-available")
async def slug_available(
    slug: str = Query(..., min_length=1),
    exclude_id: int | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_editor),
):
    return {"slug": slug, "available": await PageService(session).is_slug_available(slug, exclude_id)}


@router.post("/preview")
async def preview(
    payload: PreviewPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_editor),
):
    return {"html": await PageRenderingService(session).render_content(payload.content)}


@router.get("/slug/{slug}", response_model=PageOut)
async def get_page_by_slug(
    slug: str,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    page = await PageService(session).get_by_slug(slug)
    return _page_out(await _readable_page(session, page, principal))


@router.post("", response_model=PageOut, status_code=201)
async def create_page(
    payload: PagePayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    page = await PageService(session).create(
        title=payload.title,
        content=payload.content,
        category_id=payload.category_id,
        tags=payload.tags,
        slug=payload.slug,
        visibility=visibility_value(payload.visibility),
        is_locked=payload.is_locked and principal.is_admin,
        author=principal.username,
    )
    return _page_out(page)


@router.get("/{page_id}", response_model=PageOut)
async def get_page(
    page_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    page = await PageService(session).get_by_id(page_id)
    return _page_out(await _readable_page(session, page, principal))


@router.put("/{page_id}", response_model=PageOut)
async def update_page(
    page_id: int,
    payload: PagePayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    page = await PageService(session).update(
        page_id,
        title=payload.title,
        content=payload.content,
        category_id=payload.category_id,
        tags=payload.tags,
        change_comment=payload.change_comment,
        editor=principal.username,
        editor_is_admin=principal.is_admin,
        slug=payload.slug,
        visibility=visibility_value(payload.visibility),
        is_locked=payload.is_locked if principal.is_admin else None,
    )
    return _page_out(page)


@router.delete("/{page_id}", status_code=204)
async def delete_page(
    page_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    service = PageService(session)
    page = await service.get_by_id(page_id)
    if not can_delete_page(page, principal):
        raise AuthorizationException("Page cannot be deleted", username=principal.username, required_role="Admin")
    await service.delete(page_id, deleted_by=principal.username)


@router.post("/{page_id}/restore", response_model=PageOut)
async def restore_page(
    page_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return _page_out(await PageService(session).restore(page_id, restored_by=principal.username))


@router.get("/{page_id}/render", response_model=RenderedPageOut)
async def render_page(
    page_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    page = await _readable_page(session, await PageService(session).get_by_id(page_id), principal)
    html = await PageRenderingService(session).render(page)
    return RenderedPageOut(page=_page_out(page), html=html)


@router.get("/{page_id}/history", response_model=list[PageVersionOut])
async def page_history(
    page_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    await _readable_page(session, await PageService(session).get_by_id(page_id), principal)
    history = await PageContentService(session).get_history(page_id)
    return [PageVersionOut(**asdict(v)) for v in history]


@router.get("/{page_id}/versions/{version}", response_model=PageVersionOut)
async def page_version(
    page_id: int,
    version: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    await _readable_page(session, await PageService(session).get_by_id(page_id), principal)
    found = await PageContentService(session).get_version(page_id, version)
    if found is None:
        raise HTTPException(status_code=404, detail="Version not found")
    return PageVersionOut(**asdict(found))


@router.post("/{page_id}/revert/{version}", response_model=PageOut)
async def revert_page(
    page_id: int,
    version: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    page = await PageService(session).get_by_id(page_id)
    if page.is_locked and not principal.is_admin:
        raise AuthorizationException("Page is locked", username=principal.username, required_role="Admin")
    return _page_out(await PageContentService(session).revert(page_id, version, principal.username))


@router.get("/{page_id}/compare", response_model=PageComparisonOut)
async def compare_versions(
    page_id: int,
    from_version: int = Query(..., ge=1),
    to_version: int = Query(..., ge=1),
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    await _readable_page(session, await PageService(session).get_by_id(page_id), principal)
    comparison = await PageContentService(session).compare(page_id, from_version, to_version)
    return PageComparisonOut(**asdict(comparison))
