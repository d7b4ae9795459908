from __future__ import annotations

import logging
import sys
import time
from collections import Counter
from dataclasses import replace
from typing import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal, can_view_file, can_view_page
from squirrel.src.modules.pages_service import PageDto, build_page_dto
from squirrel.src.modules.plugin_contracts import SearchPlugin
from squirrel.src.modules.plugin_loader import PluginRegistry, get_plugin_registry
from squirrel.src.modules.search_contracts import (
    FILE_ID_PREFIX,
    SearchDocument,
    SearchIndexStats,
    SearchRequest,
    SearchResponse,
    SearchResult,
    SearchStrategy,
    file_document,
    generate_excerpt,
)
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import File, Page, PageContent

logger = logging.getLogger(__name__)


def page_document(page: PageDto) -> SearchDocument:
    return SearchDocument(
        id=str(page.id),
        title=page.title,
        slug=page.slug,
        content=page.content,
        tags=list(page.tags),
        category_id=page.category_id,
        category_name=page.category_name,
        author=page.modified_by,
        created_on=page.created_on,
        modified_on=page.modified_on,
    )


def score_page(query: str, title: str, content: str) -> float:
    q = query.lower()
    t = (title or "").lower()
    score = 0.0
    if q in t:
        score += 10
        if t == q:
            score += 20
        elif t.startswith(q):
            score += 10
    score += 0.5 * (content or "").lower().count(q)
    return score


def score_file(query: str, file_name: str, description: str | None) -> float:
    q = query.lower()
    name = (file_name or "").lower()
    score = 0.0
    if q in name:
        score += 10
        if name == q:
            score += 20
        elif name.startswith(q):
            score += 10
    if description and q in description.lower():
        score += 5
    return score


def build_facets(results: Iterable[SearchResult]) -> dict[str, dict[str, int]]:
    results = list(results)
    return {
        "categories": dict(Counter(r.category_name for r in results if r.category_name)),
        "tags": dict(Counter(t for r in results for t in r.tags)),
    }


class DatabaseSearchStrategy(SearchStrategy):
    """Relational fallback: LIKE matching with in-process scoring; index operations are no-ops."""

    name = "Database"
    version = "1.0.0"

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _live_pages(self, request: SearchRequest | None = None, text: str | None = None) -> list[PageDto]:
        stmt = select(Page).where(Page.is_deleted.is_(False))
        if text:
            pattern = f"%{text}%"
            latest = (
                select(PageContent.page_id, func.max(PageContent.version_number).label("v"))
                .group_by(PageContent.page_id)
                .subquery()
            )
            stmt = (
                stmt.join(latest, latest.c.page_id == Page.id)
                .join(PageContent, (PageContent.page_id == Page.id) & (PageContent.version_number == latest.c.v))
                .where(or_(Page.title.ilike(pattern), PageContent.text.ilike(pattern)))
            )
        if request is not None:
            if request.category_ids:
                stmt = stmt.where(Page.category_id.in_(request.category_ids))
            if request.author:
                author = f"%{request.author}%"
                stmt = stmt.where(or_(Page.created_by.ilike(author), Page.modified_by.ilike(author)))
            if request.start_date:
                stmt = stmt.where(Page.modified_on >= request.start_date)
            if request.end_date:
                stmt = stmt.where(Page.modified_on <= request.end_date)
        rows = await self.session.execute(stmt.order_by(Page.title))
        pages = [await build_page_dto(self.session, p) for p in rows.scalars().unique().all()]
        if request is not None and request.tags:
            wanted = {t.strip().lower() for t in request.tags if t.strip()}
            pages = [p for p in pages if wanted.intersection(p.tags)]
        return pages

    async def _search_pages(self, request: SearchRequest, query: str) -> list[SearchResult]:
        results = []
        for page in await self._live_pages(request, query):
            results.append(
                SearchResult(
                    document_id=str(page.id),
                    title=page.title,
                    slug=page.slug,
                    excerpt=generate_excerpt(page.content, query),
                    content=page.content if request.include_content else None,
                    score=score_page(query, page.title, page.content),
                    category_id=page.category_id,
                    category_name=page.category_name,
                    tags=list(page.tags),
                    author=page.modified_by,
                    created_on=page.created_on,
                    modified_on=page.modified_on,
                )
            )
        return results

    async def _search_files(self, request: SearchRequest, query: str) -> list[SearchResult]:
        pattern = f"%{query}%"
        stmt = select(File).where(
            File.is_deleted.is_(False), or_(File.file_name.ilike(pattern), File.description.ilike(pattern))
        )
        if request.author:
            stmt = stmt.where(File.uploaded_by.ilike(f"%{request.author}%"))
        if request.start_date:
            stmt = stmt.where(File.uploaded_on >= request.start_date)
        if request.end_date:
            stmt = stmt.where(File.uploaded_on <= request.end_date)
        rows = await self.session.execute(stmt)
        return [
            SearchResult(
                document_id=f"{FILE_ID_PREFIX}{f.id}",
                title=f.file_name,
                excerpt=generate_excerpt(f.description or "", query),
                score=score_file(query, f.file_name, f.description),
                author=f.uploaded_by,
                created_on=f.uploaded_on,
                modified_on=f.uploaded_on,
                document_type="file",
            )
            for f in rows.scalars().all()
        ]

    async def search(self, request: SearchRequest) -> SearchResponse:
        started = time.perf_counter()
        query = (request.query or "").strip()
        results: list[SearchResult] = []
        if query:
            if request.wants("page"):
                results.extend(await self._search_pages(request, query))
            # file filters have no category or tag dimension
            if request.wants("file") and not request.category_ids and not request.tags:
                results.extend(await self._search_files(request, query))
        results.sort(key=lambda r: (-r.score, r.title.lower()))

        facets = build_facets(results)
        page = max(1, request.page)
        size = max(1, request.page_size)
        window = results[(page - 1) * size: page * size]
        return SearchResponse(
            query=query,
            total_results=len(results),
            page=page,
            page_size=size,
            results=window,
            facets=facets,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 2),
            strategy=self.name,
        )

    async def index_document(self, document: SearchDocument) -> None:
        return None

    async def remove_document(self, document_id: str) -> None:
        return None

    async def rebuild_index(self, documents: Iterable[SearchDocument]) -> None:
        return None

    async def clear_index(self) -> None:
        return None

    async def get_index_stats(self) -> SearchIndexStats:
        total = (await self.session.execute(select(func.count(Page.id)).where(Page.is_deleted.is_(False)))).scalar_one()
        return SearchIndexStats(total_documents=int(total), strategy=self.name)

    async def get_suggestions(self, partial_query: str, max_suggestions: int = 10) -> list[str]:
        partial = (partial_query or "").strip()
        if not partial:
            return []
        rows = await self.session.execute(
            select(Page.title).where(Page.is_deleted.is_(False), Page.title.ilike(f"%{partial}%"))
        )
        titles = list(rows.scalars().all())
        lowered = partial.lower()
        titles.sort(key=lambda t: (not t.lower().startswith(lowered), t.lower()))
        return titles[:max_suggestions]

    async def find_similar(self, document_id: str, count: int = 5) -> list[SearchResult]:
        try:
            page_id = int(document_id)
        except (TypeError, ValueError):
            return []
        source = await self.session.get(Page, page_id)
        if source is None or source.is_deleted:
            return []
        origin = await build_page_dto(self.session, source)
        scored = []
        for page in await self._live_pages():
            if page.id == origin.id:
                continue
            shared = len(set(page.tags) & set(origin.tags))
            same_category = origin.category_id is not None and page.category_id == origin.category_id
            score = shared * 2 + (1 if same_category else 0)
            if score > 0:
                scored.append((score, page))
        scored.sort(key=lambda item: (-item[0], item[1].title.lower()))
        return [
            SearchResult(
                document_id=str(page.id),
                title=page.title,
                slug=page.slug,
                excerpt=generate_excerpt(page.content, ""),
                score=float(score),
                category_id=page.category_id,
                category_name=page.category_name,
                tags=list(page.tags),
                author=page.modified_by,
                modified_on=page.modified_on,
            )
            for score, page in scored[:count]
        ]


class SearchService:
    def __init__(
        self,
        session: AsyncSession,
        registry: PluginRegistry | None = None,
        config: ConfigurationService | None = None,
    ):
        self.session = session
        self.registry = registry or get_plugin_registry()
        self.config = config or ConfigurationService(session)
        self.fallback = DatabaseSearchStrategy(session)

    async def get_strategy(self) -> SearchStrategy:
        plugins = sorted(self.registry.enabled_of_type(SearchPlugin), key=lambda p: p.priority)
        for plugin in plugins:
            strategy = plugin.search_strategy
            try:
                if await strategy.is_available():
                    return strategy
            except Exception:
                logger.exception("Search plugin %s availability check failed", plugin.metadata.id)
        return self.fallback

    async def visible_results(self, results: list[SearchResult], principal: Principal) -> list[SearchResult]:
        """Keep the page and file hits the principal may view; hits whose record is gone are dropped."""
        allow_anonymous = await self.config.get_value("SQUIRREL_ALLOW_ANONYMOUS_READING")
        page_ids = {int(r.document_id) for r in results if r.document_type == "page" and r.document_id.isdigit()}
        file_ids = {
            r.document_id.removeprefix(FILE_ID_PREFIX)
            for r in results
            if r.document_type == "file" and r.document_id.startswith(FILE_ID_PREFIX)
        }
        visible_pages: set[int] = set()
        visible_files: set[str] = set()
        if page_ids:
            rows = await self.session.execute(select(Page).where(Page.id.in_(page_ids)))
            visible_pages = {p.id for p in rows.scalars().all() if can_view_page(p, principal, allow_anonymous)}
        if file_ids:
            rows = await self.session.execute(select(File).where(File.id.in_(file_ids)))
            visible_files = {f.id for f in rows.scalars().all() if can_view_file(f, principal, allow_anonymous)}

        kept = []
        for result in results:
            if result.document_type == "file":
                if result.document_id.removeprefix(FILE_ID_PREFIX) in visible_files:
                    kept.append(result)
            elif result.document_id.isdigit() and int(result.document_id) in visible_pages:
                kept.append(result)
        return kept

    async def _run(self, strategy: SearchStrategy, request: SearchRequest) -> SearchResponse:
        try:
            return await strategy.search(request)
        except Exception:
            if strategy is self.fallback:
                raise
            logger.exception("Search strategy %s failed; falling back to database search", strategy.name)
            return await self.fallback.search(request)

    async def advanced_search(self, request: SearchRequest, principal: Principal | None = None) -> SearchResponse:
        """Run a search; with a principal, hidden hits are removed before the page window is cut."""
        minimum = await self.config.get_value("SQUIRREL_SEARCH_MINIMUM_LENGTH")
        query = (request.query or "").strip()
        strategy = await self.get_strategy()
        if len(query) < minimum:
            logger.debug("Search query '%s' below minimum length %d", query, minimum)
            return SearchResponse(
                query=query, total_results=0, page=request.page, page_size=request.page_size, strategy=strategy.name
            )
        if principal is None:
            return await self._run(strategy, request)

        everything = await self._run(strategy, replace(request, page=1, page_size=sys.maxsize))
        visible = await self.visible_results(everything.results, principal)
        page = max(1, request.page)
        size = max(1, request.page_size)
        return SearchResponse(
            query=everything.query,
            total_results=len(visible),
            page=page,
            page_size=size,
            results=visible[(page - 1) * size: page * size],
            facets=build_facets(visible),
            execution_time_ms=everything.execution_time_ms,
            strategy=everything.strategy,
        )

    async def search(
        self,
        query: str,
        page: int = 1,
        page_size: int | None = None,
        principal: Principal | None = None,
    ) -> SearchResponse:
        size = page_size or await self.config.get_value("SQUIRREL_SEARCH_RESULTS_PER_PAGE")
        return await self.advanced_search(SearchRequest(query=query, page=page, page_size=size), principal)

    async def suggestions(self, partial_query: str, max_suggestions: int = 10) -> list[str]:
        strategy = await self.get_strategy()
        return await strategy.get_suggestions(partial_query, max_suggestions)

    async def find_similar(self, page_id: int, count: int = 5) -> list[SearchResult]:
        strategy = await self.get_strategy()
        return await strategy.find_similar(str(page_id), count)

    async def index_page(self, page: PageDto) -> None:
        strategy = await self.get_strategy()
        if page.is_deleted:
            await strategy.remove_document(str(page.id))
            return
        await strategy.index_document(page_document(page))

    async def remove_page(self, page_id: int) -> None:
        strategy = await self.get_strategy()
        await strategy.remove_document(str(page_id))

    async def rebuild_index(self) -> int:
        rows = await self.session.execute(select(Page).where(Page.is_deleted.is_(False)).order_by(Page.id))
        documents = [page_document(await build_page_dto(self.session, p)) for p in rows.scalars().all()]
        pages = len(documents)
        files = await self.session.execute(select(File).where(File.is_deleted.is_(False)).order_by(File.uploaded_on))
        documents.extend(
            file_document(f.id, f.file_name, f.description, f.uploaded_by, f.uploaded_on) for f in files.scalars().all()
        )
        strategy = await self.get_strategy()
        await strategy.rebuild_index(documents)
        logger.info(
            "Rebuilt %s search index with %d page(s) and %d file(s)", strategy.name, pages, len(documents) - pages
        )
        return len(documents)

    async def get_stats(self) -> SearchIndexStats:
        strategy = await self.get_strategy()
        return await strategy.get_index_stats()
