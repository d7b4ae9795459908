"""Resolve menu URL tokens (``%ALLPAGES%``, ``tag:x``, ``category:a:b``, page slugs) to paths."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable
from urllib.parse import quote

logger = logging.getLogger(__name__)

STANDARD_TOKENS = {
    "%ALLPAGES%": "/Pages/AllPages",
    "%ALLTAGS%": "/Pages/AllTags",
    "%ALLCATEGORIES%": "/Pages/Category",
    "%SEARCH%": "/Search",
    "%NEWPAGE%": "/Pages/New",
    "%HOME%": "/",
    "%CATEGORIES%": "/Categories",
    "%SITEMAP%": "/Sitemap",
    "%RECENTLYUPDATED%": "/Pages/AllPages?recent=10",
    "%ADMIN%": "/Admin",
}

CategoryLookup = Callable[[str], Awaitable[int | None]]
PageLookup = Callable[[str], Awaitable[tuple[int, str] | None]]


def is_standard_token(token: str | None) -> bool:
    return bool(token) and len(token) > 2 and token.startswith("%") and token.endswith("%")


def is_dynamic_token(token: str | None) -> bool:
    if not token:
        return False
    lowered = token.lower()
    return lowered.startswith("tag:") or lowered.startswith("category:")


class UrlTokenResolver:
    def __init__(
        self,
        category_lookup: CategoryLookup | None = None,
        page_lookup: PageLookup | None = None,
    ):
        self._category_lookup = category_lookup
        self._page_lookup = page_lookup

    async def resolve(self, token: str | None) -> str | None:
        if token is None:
            return None
        value = token.strip()
        if not value:
            return value

        standard = STANDARD_TOKENS.get(value.upper())
        if standard is not None:
            return standard
        if is_standard_token(value):
            return value

        lowered = value.lower()
        if lowered.startswith("tag:"):
            return f"/Pages/AllPages?tag={quote(value[4:].strip(), safe='')}"
        if lowered.startswith("category:"):
            return await self._resolve_category(value[len("category:"):])

        if value.startswith("/") or lowered.startswith(("http://", "https://")):
            return value

        if self._page_lookup is not None:
            found = await self._page_lookup(value)
            if found is not None:
                page_id, slug = found
                return f"/wiki/{page_id}/{slug}"
        return value

    async def _resolve_category(self, raw_path: str) -> str | None:
        segments = [s.strip() for s in raw_path.split(":") if s.strip()]
        if not segments:
            return None
        if self._category_lookup is None:
            return f"/Pages/Category?categoryName={quote(segments[-1], safe='')}"
        try:
            category_id = await self._category_lookup("/".join(segments))
        except Exception:
            logger.warning("Category lookup failed for token path %s", raw_path, exc_info=True)
            return f"/Pages/Category?categoryName={quote(segments[-1], safe='')}"
        if category_id is None:
            return None
        return f"/Pages/AllPages?categoryId={category_id}"
