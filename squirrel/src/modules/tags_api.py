from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.tags_service import TagService
from squirrel.src.modules.wiki_auth import require_admin, require_editor
from squirrel.src.modules.wiki_db import get_session

router = APIRouter(
    prefix="/api/tags",
    tags=["tags"],
)


class TagPayload(BaseModel):
    name: str


class TagRenamePayload(BaseModel):
    new_name: str


class TagMergePayload(BaseModel):
    source: str
    target: str


class TagOut(BaseModel):
    id: int
    name: str
    page_count: int


class TagCloudOut(BaseModel):
    name: str
    count: int
    weight: int


class TagStatsOut(BaseModel):
    total_tags: int
    unused_tags: int
    tagged_pages: int
    total_associations: int
    average_tags_per_page: float


@router.get("", response_model=list[TagOut])
async def list_tags(session: AsyncSession = Depends(get_session)):
    return [TagOut(**asdict(t)) for t in await TagService(session).get_all()]


@router.get("/popular", response_model=list[TagOut])
async def popular_tags(
    count: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    return [TagOut(**asdict(t)) for t in await TagService(session).get_popular(count)]


@router.get("/cloud", response_model=list[TagCloudOut])
async def tag_cloud(
    max_tags: int = Query(default=50, ge=1, le=500),
    min_count: int = Query(default=1, ge=0),
    session: AsyncSession = Depends(get_session),
):
    return [TagCloudOut(**asdict(t)) for t in await TagService(session).get_tag_cloud(max_tags, min_count)]


@router.get("/stats", response_model=TagStatsOut)
async def tag_stats(session: AsyncSession = Depends(get_session)):
    return TagStatsOut(**asdict(await TagService(session).get_stats()))


@router.post("", response_model=TagOut, status_code=201)
async def create_tag(
    payload: TagPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_editor),
):
    return TagOut(**asdict(await TagService(session).create(payload.name)))


@router.post("/merge", response_model=TagOut)
async def merge_tags(
    payload: TagMergePayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    return TagOut(**asdict(await TagService(session).merge(payload.source, payload.target)))


@router.post("/cleanup")
async def cleanup_tags(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return {"removed": await TagService(session).cleanup_unused()}


@router.get("/{name}", response_model=TagOut)
async def get_tag(name: str, session: AsyncSession = Depends(get_session)):
    tag = await TagService(session).get_by_name(name)
    if tag is None:
        raise HTTPException(status_code=404, detail="Tag not found")
    return TagOut(**asdict(tag))


@router.get("/{name}/related", response_model=list[TagOut])
async def related_tags(
    name: str,
    count: int = Query(default=10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return [TagOut(**asdict(t)) for t in await TagService(session).get_related(name, count)]


@router.put("/{name}", response_model=TagOut)
async def rename_tag(
    name: str,
    payload: TagRenamePayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    return TagOut(**asdict(await TagService(session).rename(name, payload.new_name)))


@router.delete("/{name}", status_code=204)
async def delete_tag(
    name: str,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    await TagService(session).delete(name)
