"""Full-text search plugin backed by a whoosh index on local disk."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from whoosh import index as whoosh_index
from whoosh.analysis import StemmingAnalyzer
from whoosh.fields import DATETIME, ID, KEYWORD, TEXT, Schema
from whoosh.filedb.filestore import RamStorage
from whoosh.qparser import MultifieldParser, OrGroup
from whoosh.query import And, DateRange, Or, Prefix, Term

from squirrel.src.modules.plugin_contracts import (
    ConfigType,
    PluginAction,
    PluginActionResult,
    PluginConfigurationItem,
    PluginMetadata,
    PluginType,
    SearchPlugin,
)
from squirrel.src.modules.search_contracts import (
    SearchDocument,
    SearchIndexStats,
    SearchRequest,
    SearchResponse,
    SearchResult,
    SearchStrategy,
    generate_excerpt,
)
from squirrel.src.modules.wiki_db import utc_now

logger = logging.getLogger(__name__)

PLUGIN_ID = "squirrel.wiki.plugins.search.whoosh"
DEFAULT_INDEX_PATH = "App_Data/SearchIndex"
MEMORY_INDEX = ":memory:"
SEARCH_FIELDS = ["title", "content", "tags"]


def build_schema() -> Schema:
    return Schema(
        id=ID(stored=True, unique=True),
        title=TEXT(stored=True, analyzer=StemmingAnalyzer(), field_boost=3.0),
        slug=ID(stored=True),
        content=TEXT(stored=True, analyzer=StemmingAnalyzer()),
        tags=KEYWORD(stored=True, commas=True, lowercase=True, scorable=True, field_boost=2.0),
        category_id=ID(stored=True),
        category_name=ID(stored=True),
        author=ID(stored=True),
        created_on=DATETIME(stored=True),
        modified_on=DATETIME(stored=True, sortable=True),
        document_type=ID(stored=True),
    )


def _fields(document: SearchDocument) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "id": document.id,
        "title": document.title or "",
        "slug": document.slug or "",
        "content": document.content or "",
        "tags": ",".join(t.strip().lower() for t in document.tags if t and t.strip()),
        "document_type": document.document_type or "page",
    }
    if document.category_id is not None:
        fields["category_id"] = str(document.category_id)
    if document.category_name:
        fields["category_name"] = document.category_name
    if document.author:
        fields["author"] = document.author
    if document.created_on:
        fields["created_on"] = document.created_on
    if document.modified_on:
        fields["modified_on"] = document.modified_on
    return fields


def _tags(stored: dict[str, Any]) -> list[str]:
    return [t for t in (stored.get("tags") or "").split(",") if t]


def _category_id(stored: dict[str, Any]) -> int | None:
    raw = stored.get("category_id")
    return int(raw) if raw not in (None, "") and str(raw).isdigit() else None


class WhooshSearchStrategy(SearchStrategy):
    name = "Whoosh"
    version = "2.7"

    def __init__(self, index_path: str = DEFAULT_INDEX_PATH):
        self.index_path = index_path
        self._index = None
        self._lock = threading.Lock()
        self._last_updated: datetime | None = None

    @property
    def in_memory(self) -> bool:
        return self.index_path == MEMORY_INDEX

    def _open(self) -> None:
        schema = build_schema()
        if self.in_memory:
            self._index = RamStorage().create_index(schema)
            return
        path = Path(self.index_path)
        path.mkdir(parents=True, exist_ok=True)
        if whoosh_index.exists_in(str(path)):
            self._index = whoosh_index.open_dir(str(path))
        else:
            self._index = whoosh_index.create_in(str(path), schema)
        logger.info("Opened whoosh index at %s", path)

    async def initialize(self, configuration: dict[str, Any] | None = None) -> None:
        if configuration and configuration.get("IndexPath"):
            self.index_path = str(configuration["IndexPath"])
        await asyncio.to_thread(self._open)

    async def is_available(self) -> bool:
        return self._index is not None

    def close(self) -> None:
        if self._index is not None:
            self._index.close()
            self._index = None

    def _require_index(self):
        if self._index is None:
            raise RuntimeError("Whoosh index has not been initialized")
        return self._index

    def _filter(self, request: SearchRequest):
        clauses = []
        if request.category_ids:
            clauses.append(Or([Term("category_id", str(c)) for c in request.category_ids]))
        if request.tags:
            wanted = [t.strip().lower() for t in request.tags if t.strip()]
            if wanted:
                clauses.append(Or([Term("tags", t) for t in wanted]))
        if request.author:
            clauses.append(Term("author", request.author))
        if request.start_date or request.end_date:
            clauses.append(DateRange("modified_on", request.start_date, request.end_date))
        if request.document_types:
            clauses.append(Or([Term("document_type", t.lower()) for t in request.document_types]))
        if not clauses:
            return None
        return clauses[0] if len(clauses) == 1 else And(clauses)

    def _search(self, request: SearchRequest) -> SearchResponse:
        started = time.perf_counter()
        ix = self._require_index()
        text = (request.query or "").strip()
        page = max(1, request.page)
        size = max(1, request.page_size)
        with ix.searcher() as searcher:
            parser = MultifieldParser(SEARCH_FIELDS, schema=ix.schema, group=OrGroup)
            query = parser.parse(text)
            hits = searcher.search(query, limit=None, filter=self._filter(request), terms=True)
            hits.fragmenter.maxchars = 200
            total = len(hits)
            categories: Counter = Counter()
            tag_counts: Counter = Counter()
            for hit in hits:
                if hit.get("category_name"):
                    categories[hit["category_name"]] += 1
                tag_counts.update(_tags(hit.fields()))

            results = []
            for hit in hits[(page - 1) * size: page * size]:
                stored = hit.fields()
                highlight = hit.highlights("content")
                results.append(
                    SearchResult(
                        document_id=stored["id"],
                        title=stored.get("title", ""),
                        slug=stored.get("slug", ""),
                        excerpt=generate_excerpt(stored.get("content", ""), text),
                        content=stored.get("content") if request.include_content else None,
                        score=float(hit.score or 0.0),
                        category_id=_category_id(stored),
                        category_name=stored.get("category_name"),
                        tags=_tags(stored),
                        author=stored.get("author"),
                        created_on=stored.get("created_on"),
                        modified_on=stored.get("modified_on"),
                        highlights={"content": [highlight]} if highlight else {},
                        document_type=stored.get("document_type", "page"),
                    )
                )
        return SearchResponse(
            query=text,
            total_results=total,
            page=page,
            page_size=size,
            results=results,
            facets={"categories": dict(categories), "tags": dict(tag_counts)},
            execution_time_ms=round((time.perf_counter() - started) * 1000, 2),
            strategy=self.name,
        )

    async def search(self, request: SearchRequest) -> SearchResponse:
        return await asyncio.to_thread(self._search, request)

    def _write(self, documents: Iterable[SearchDocument] = (), removals: Iterable[str] = ()) -> int:
        ix = self._require_index()
        count = 0
        with self._lock:
            writer = ix.writer()
            try:
                for document_id in removals:
                    writer.delete_by_term("id", document_id)
                    count += 1
                for document in documents:
                    writer.update_document(**_fields(document))
                    count += 1
            except Exception:
                writer.cancel()
                raise
            writer.commit()
            self._last_updated = utc_now()
        return count

    async def index_document(self, document: SearchDocument) -> None:
        await asyncio.to_thread(self._write, [document])

    async def index_documents(self, documents: Iterable[SearchDocument]) -> None:
        documents = list(documents)
        count = await asyncio.to_thread(self._write, documents)
        logger.info("Indexed %d document(s) into whoosh", count)

    async def remove_document(self, document_id: str) -> None:
        await asyncio.to_thread(self._write, (), [document_id])

    async def remove_documents(self, document_ids: Iterable[str]) -> None:
        await asyncio.to_thread(self._write, (), list(document_ids))

    def _clear(self) -> None:
        with self._lock:
            schema = build_schema()
            if self._index is not None:
                self._index.close()
            if self.in_memory:
                self._index = RamStorage().create_index(schema)
            else:
                path = Path(self.index_path)
                path.mkdir(parents=True, exist_ok=True)
                self._index = whoosh_index.create_in(str(path), schema)
            self._last_updated = utc_now()

    async def clear_index(self) -> None:
        await asyncio.to_thread(self._clear)
        logger.info("Cleared whoosh index")

    def _optimize(self) -> None:
        ix = self._require_index()
        with self._lock:
            ix.optimize()

    async def optimize_index(self) -> None:
        await asyncio.to_thread(self._optimize)

    def _stats(self) -> SearchIndexStats:
        ix = self._require_index()
        size = 0
        if not self.in_memory:
            size = sum(p.stat().st_size for p in Path(self.index_path).glob("*") if p.is_file())
        return SearchIndexStats(
            total_documents=ix.doc_count(),
            index_size_bytes=size,
            last_updated=self._last_updated,
            strategy=self.name,
            extra={"index_path": self.index_path},
        )

    async def get_index_stats(self) -> SearchIndexStats:
        return await asyncio.to_thread(self._stats)

    def _suggestions(self, partial: str, max_suggestions: int) -> list[str]:
        ix = self._require_index()
        words = partial.lower().split()
        if not words:
            return []
        query = And([Prefix("title", w) for w in words]) if len(words) > 1 else Prefix("title", words[0])
        with ix.searcher() as searcher:
            titles = [hit["title"] for hit in searcher.search(query, limit=max_suggestions * 3)]
        lowered = partial.lower()
        unique = list(dict.fromkeys(titles))
        unique.sort(key=lambda t: (not t.lower().startswith(lowered), t.lower()))
        return unique[:max_suggestions]

    async def get_suggestions(self, partial_query: str, max_suggestions: int = 10) -> list[str]:
        partial = (partial_query or "").strip()
        if not partial:
            return []
        return await asyncio.to_thread(self._suggestions, partial, max_suggestions)

    def _similar(self, document_id: str, count: int) -> list[SearchResult]:
        ix = self._require_index()
        with ix.searcher() as searcher:
            docnum = searcher.document_number(id=document_id)
            if docnum is None:
                return []
            source = searcher.stored_fields(docnum)
            text = " ".join([source.get("title", ""), source.get("content", "")])
            results = []
            for hit in searcher.more_like(docnum, "content", text=text, top=count + 1):
                stored = hit.fields()
                if stored["id"] == document_id:
                    continue
                results.append(
                    SearchResult(
                        document_id=stored["id"],
                        title=stored.get("title", ""),
                        slug=stored.get("slug", ""),
                        excerpt=generate_excerpt(stored.get("content", ""), ""),
                        score=float(hit.score or 0.0),
                        category_id=_category_id(stored),
                        category_name=stored.get("category_name"),
                        tags=_tags(stored),
                        author=stored.get("author"),
                        modified_on=stored.get("modified_on"),
                        document_type=stored.get("document_type", "page"),
                    )
                )
            return results[:count]

    async def find_similar(self, document_id: str, count: int = 5) -> list[SearchResult]:
        return await asyncio.to_thread(self._similar, document_id, count)


class WhooshSearchPlugin(SearchPlugin):
    priority = 10
    supports_fuzzy_search = True
    supports_faceted_search = True
    supports_highlighting = True
    supports_suggestions = True

    _metadata = PluginMetadata(
        id=PLUGIN_ID,
        name="Whoosh Full-Text Search",
        description="Ranked full-text search over pages and files with facets, suggestions and similar-page lookup",
        version="1.0.0",
        author="Squirrel Wiki",
        type=PluginType.SEARCH_PROVIDER,
        requires_configuration=False,
        configuration=[
            PluginConfigurationItem(
                key="IndexPath",
                display_name="Index Path",
                description="Directory holding the search index (':memory:' keeps it in RAM)",
                type=ConfigType.TEXT,
                default_value=DEFAULT_INDEX_PATH,
            )
        ],
    )

    def __init__(self) -> None:
        super().__init__()
        self._strategy = WhooshSearchStrategy()

    @property
    def metadata(self) -> PluginMetadata:
        return self._metadata

    @property
    def search_strategy(self) -> WhooshSearchStrategy:
        return self._strategy

    async def initialize(self) -> None:
        self._strategy.close()
        await self._strategy.initialize({"IndexPath": self.get_config_value("IndexPath", DEFAULT_INDEX_PATH)})
        await super().initialize()

    async def shutdown(self) -> None:
        self._strategy.close()
        await super().shutdown()

    def get_actions(self) -> list[PluginAction]:
        return [
            PluginAction("whoosh-clear-index", "Clear Search Index", "Removes every document from the index", True),
            PluginAction("whoosh-optimize-index", "Optimize Search Index", "Merges index segments"),
        ]

    async def execute_action(self, action_id: str, parameters: dict[str, Any] | None = None) -> PluginActionResult:
        if not self.is_initialized:
            return PluginActionResult.failed("Search index is not initialized")
        if action_id == "whoosh-clear-index":
            await self._strategy.clear_index()
            return PluginActionResult.successful("Search index cleared")
        if action_id == "whoosh-optimize-index":
            await self._strategy.optimize_index()
            stats = await self._strategy.get_index_stats()
            return PluginActionResult.successful("Search index optimized", documents=stats.total_documents)
        return await super().execute_action(action_id, parameters)


def get_plugins():
    return [WhooshSearchPlugin()]
