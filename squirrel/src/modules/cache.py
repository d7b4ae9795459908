"""In-process TTL cache shared by the wiki services.

Values are stored with an absolute monotonic expiry. Pattern removal uses
shell-style globs (``page:*``) so event handlers can drop whole families of
keys after a mutation.
"""
from __future__ import annotations

import fnmatch
import logging
import threading
import time
from functools import lru_cache
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 60 * 60


class TTLCache:
    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, enabled: bool = True):
        self._lock = threading.Lock()
        self._store: dict[str, tuple[float, Any]] = {}
        self.default_ttl = default_ttl
        self.enabled = enabled
        self.hits = 0
        self.misses = 0

    def configure(self, enabled: bool, default_ttl: float | None = None) -> None:
        """Switch caching on or off; turning it off drops every stored entry."""
        with self._lock:
            self.enabled = enabled
            if default_ttl is not None:
                self.default_ttl = default_ttl
            if not enabled:
                self._store.clear()
        logger.info("Cache %s (default ttl %ss)", "enabled" if enabled else "disabled", self.default_ttl)

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                self._store.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if not self.enabled:
            return
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._store[key] = (time.monotonic() + lifetime, value)

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def remove(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._store.pop(key, None)

    def remove_by_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._store[key]
        if doomed:
            logger.debug("Cache removed %d keys matching %s", len(doomed), pattern)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict[str, Any]:
        now = time.monotonic()
        with self._lock:
            live = sum(1 for expires_at, _ in self._store.values() if expires_at > now)
        return {"enabled": self.enabled, "entries": live, "hits": self.hits, "misses": self.misses}


class CacheKeys:
    PAGE_PREFIX = "page:"
    ALL_PAGES = "page:all"
    TAGS_ALL = "tag:all"
    CATEGORY_TREE = "category:tree"
    CATEGORY_PREFIX = "category:"
    MENU_PREFIX = "menu:"
    FILE_PREFIX = "file:"
    FOLDER_PREFIX = "folder:"
    FOLDER_TREE = "folder:tree"

    @staticmethod
    def page(page_id: int) -> str:
        return f"page:id:{page_id}"

    @staticmethod
    def pages_by_category(category_id: int | None) -> str:
        return f"page:category:{category_id}"

    @staticmethod
    def pages_by_tag(tag: str) -> str:
        return f"page:tag:{tag.lower()}"

    @staticmethod
    def pages_by_author(author: str) -> str:
        return f"page:author:{author.lower()}"

    @staticmethod
    def category(category_id: int) -> str:
        return f"category:id:{category_id}"

    @staticmethod
    def menu_by_name(name: str) -> str:
        return f"menu:name:{name.lower()}"

    @staticmethod
    def menu_by_type(menu_type: int) -> str:
        return f"menu:type:{menu_type}"

    @staticmethod
    def file(file_id: str) -> str:
        return f"file:id:{file_id}"

    @staticmethod
    def folder(folder_id: int) -> str:
        return f"folder:id:{folder_id}"

    @staticmethod
    def markdown_html(content_hash: str, plugins_hash: str) -> str:
        return f"markdown:html:{content_hash}:{plugins_hash}"

    @staticmethod
    def config(key: str) -> str:
        return f"config:{key}"


@lru_cache
def get_cache() -> TTLCache:
    return TTLCache()


@lru_cache
def get_config_cache() -> TTLCache:
    return TTLCache(default_ttl=60 * 60)
