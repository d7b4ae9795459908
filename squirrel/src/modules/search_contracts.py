from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable


@dataclass
class SearchRequest:
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

    def wants(self, document_type: str) -> bool:
        if not self.document_types:
            return True
        return document_type.lower() in {t.lower() for t in self.document_types}


@dataclass
class SearchResult:
    document_id: str
    title: str
    slug: str = ""
    excerpt: str = ""
    content: str | None = None
    score: float = 0.0
    category_id: int | None = None
    category_name: str | None = None
    tags: list[str] = field(default_factory=list)
    author: str | None = None
    created_on: datetime | None = None
    modified_on: datetime | None = None
    highlights: dict[str, list[str]] = field(default_factory=dict)
    document_type: str = "page"


@dataclass
class SearchResponse:
    query: str
    total_results: int
    page: int
    page_size: int
    results: list[SearchResult] = field(default_factory=list)
    facets: dict[str, dict[str, int]] = field(default_factory=dict)
    execution_time_ms: float = 0.0
    strategy: str = ""

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_results / self.page_size)


@dataclass
class SearchDocument:
    id: str
    title: str
    slug: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    category_id: int | None = None
    category_name: str | None = None
    author: str | None = None
    created_on: datetime | None = None
    modified_on: datetime | None = None
    document_type: str = "page"
    extra: dict[str, Any] = field(default_factory=dict)


FILE_ID_PREFIX = "file:"


def file_document(
    file_id: str,
    file_name: str,
    description: str | None = None,
    author: str | None = None,
    uploaded_on: datetime | None = None,
) -> SearchDocument:
    return SearchDocument(
        id=f"{FILE_ID_PREFIX}{file_id}",
        title=file_name,
        content=description or "",
        author=author,
        created_on=uploaded_on,
        modified_on=uploaded_on,
        document_type="file",
    )


@dataclass
class SearchIndexStats:
    total_documents: int = 0
    index_size_bytes: int = 0
    last_updated: datetime | None = None
    strategy: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class SearchStrategy(ABC):
    name: str = ""
    version: str = "1.0.0"

    async def is_available(self) -> bool:
        return True

    async def initialize(self, configuration: dict[str, Any] | None = None) -> None:
        return None

    @abstractmethod
    async def search(self, request: SearchRequest) -> SearchResponse:
        raise NotImplementedError

    @abstractmethod
    async def index_document(self, document: SearchDocument) -> None:
        raise NotImplementedError

    async def index_documents(self, documents: Iterable[SearchDocument]) -> None:
        for document in documents:
            await self.index_document(document)

    @abstractmethod
    async def remove_document(self, document_id: str) -> None:
        raise NotImplementedError

    async def remove_documents(self, document_ids: Iterable[str]) -> None:
        for document_id in document_ids:
            await self.remove_document(document_id)

    async def rebuild_index(self, documents: Iterable[SearchDocument]) -> None:
        await self.clear_index()
        await self.index_documents(documents)

    async def optimize_index(self) -> None:
        return None

    @abstractmethod
    async def clear_index(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_index_stats(self) -> SearchIndexStats:
        raise NotImplementedError

    @abstractmethod
    async def get_suggestions(self, partial_query: str, max_suggestions: int = 10) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def find_similar(self, document_id: str, count: int = 5) -> list[SearchResult]:
        raise NotImplementedError


def generate_excerpt(content: str, term: str, max_length: int = 200) -> str:
    text = " ".join((content or "").split())
    if not term or not term.strip():
        return text if len(text) <= max_length else text[:max_length] + "..."
    index = text.lower().find(term.lower())
    if index == -1:
        return text if len(text) <= max_length else text[:max_length] + "..."
    start = max(0, index - max_length // 2)
    end = min(len(text), start + max_length)
    if end == len(text) and len(text) > max_length:
        start = max(0, end - max_length)
    excerpt = text[start:end]
    if start > 0:
        excerpt = "..." + excerpt
    if end < len(text):
        excerpt = excerpt + "..."
    return excerpt
