from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.search_contracts import SearchRequest, SearchResponse
from squirrel.src.modules.search_service import SearchService
from squirrel.src.modules.wiki_auth import get_current_user, require_admin
from squirrel.src.modules.wiki_db import get_session

router = APIRouter(
    prefix="/api/search",
    tags=["search"],
)


class AdvancedSearchPayload(BaseModel):
    query: str = ""
    page: int = 1
    page_size: int = 20
    category_ids: list[int] | None = None
    tags: list[str] | None = None
    author: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    include_content: bool = False
    document_types: list[str] | None = None


class SearchResultOut(BaseModel):
    document_id: str
    title: str
    slug: str
    excerpt: str
    content: str | None
    score: float
    category_id: int | None
    category_name: str | None
    tags: list[str]
    author: str | None
    created_on: datetime | None
    modified_on: datetime | None
    highlights: dict[str, list[str]]
    document_type: str


class SearchResponseOut(BaseModel):
    query: str
    total_results: int
    total_pages: int
    page: int
    page_size: int
    results: list[SearchResultOut]
    facets: dict[str, dict[str, int]]
    execution_time_ms: float
    strategy: str


class SearchStatsOut(BaseModel):
    total_documents: int
    index_size_bytes: int
    last_updated: datetime | None
    strategy: str
    extra: dict[str, Any]


def _response_out(response: SearchResponse) -> SearchResponseOut:
    return SearchResponseOut(**asdict(response), total_pages=response.total_pages)


@router.get("", response_model=SearchResponseOut)
async def search(
    q: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1, le=100),
    category_id: list[int] | None = Query(default=None),
    tag: list[str] | None = Query(default=None),
    author: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    service = SearchService(session)
    if not (category_id or tag or author):
        return _response_out(await service.search(q, page=page, page_size=page_size, principal=principal))
    size = page_size or await service.config.get_value("SQUIRREL_SEARCH_RESULTS_PER_PAGE")
    request = SearchRequest(query=q, page=page, page_size=size, category_ids=category_id, tags=tag, author=author)
    return _response_out(await service.advanced_search(request, principal))


@router.post("/advanced", response_model=SearchResponseOut)
async def advanced_search(
    payload: AdvancedSearchPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    request = SearchRequest(**payload.model_dump())
    request.page = max(request.page, 1)
    request.page_size = min(max(request.page_size, 1), 100)
    return _response_out(await SearchService(session).advanced_search(request, principal))


@router.get("/suggest")
async def suggest(
    q: str = Query(..., min_length=1),
    count: int = Query(default=10, ge=1, le=50),
    session: AsyncSession = Depends(get_session),
):
    return {"query": q, "suggestions": await SearchService(session).suggestions(q, count)}


@router.get("/similar/{page_id}", response_model=list[SearchResultOut])
async def similar_pages(
    page_id: int,
    count: int = Query(default=5, ge=1, le=50),
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_user),
):
    service = SearchService(session)
    found = await service.find_similar(page_id, count)
    return [SearchResultOut(**asdict(r)) for r in await service.visible_results(found, principal)]


@router.get("/stats", response_model=SearchStatsOut)
async def search_stats(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return SearchStatsOut(**asdict(await SearchService(session).get_stats()))


@router.post("/rebuild")
async def rebuild_index(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return {"indexed": await SearchService(session).rebuild_index()}
