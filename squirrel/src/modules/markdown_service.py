from __future__ import annotations

import base64
import hashlib
import html as html_lib
import logging
import re
from functools import lru_cache
from typing import Callable, Iterable, Mapping

import markdown
import pymdownx.superfences

from squirrel.src.modules import slugs
from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.plugin_loader import get_plugin_registry

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = [
    "fenced_code",
    "tables",
    "toc",
    "sane_lists",
    "attr_list",
    "def_list",
    "abbr",
    "footnotes",
    "admonition",
    "md_in_html",
    "pymdownx.betterem",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.caret",
    "pymdownx.details",
    "pymdownx.tasklist",
    "pymdownx.magiclink",
    "pymdownx.superfences",
]

MARKDOWN_EXTENSION_CONFIGS = {
    "pymdownx.superfences": {
        "custom_fences": [
            {
                "name": "mermaid",
                "class": "mermaid",
                "format": pymdownx.superfences.fence_div_format,
            }
        ]
    },
}

WIKI_LINK_RE = re.compile(r"\[\[([^\]|]+?)(?:\|([^\]]+?))?\]\]")
MARKDOWN_LINK_RE = re.compile(r"(?<!!)\[([^\]]+)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
INTERNAL_HREF_RE = re.compile(r'href="/([^"#?]*)"', re.IGNORECASE)
TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")

TOKEN_REPLACEMENTS = {
    "@@TOC@@": '<div class="wiki-toc" data-token="toc"></div>',
    "@@TAGCLOUD@@": '<div class="wiki-tagcloud" data-token="tagcloud"></div>',
    "@@MAINPAGE@@": '<a href="/" class="wiki-mainpage">Main Page</a>',
    "@@ALLPAGES@@": '<div class="wiki-allpages" data-token="allpages"></div>',
    "@@CATEGORIES@@": '<div class="wiki-categories" data-token="categories"></div>',
}

_SKIPPED_PREFIXES = ("http://", "https://", "//", "#", "mailto:", "javascript:")


def _content_hash(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _plugins_hash(plugin_ids: Iterable[str]) -> str:
    joined = "|".join(sorted(plugin_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def _link_target(raw: str) -> str | None:
    target = raw.strip()
    if not target or target.lower().startswith(_SKIPPED_PREFIXES):
        return None
    target = target.lstrip("/")
    if target.lower().endswith(".html"):
        target = target[:-5]
    return target or None


class MarkdownService:
    def __init__(
        self,
        cache: TTLCache | None = None,
        extensions_provider: Callable[[], list] | None = None,
    ):
        self.cache = cache or get_cache()
        self._extensions_provider = extensions_provider or (lambda: [])

    def _extensions(self) -> list:
        try:
            return list(self._extensions_provider())
        except Exception:
            logger.exception("Could not list markdown extension plugins")
            return []

    def convert_wiki_links(self, text: str) -> str:
        def replace(match: re.Match) -> str:
            title = match.group(1).strip()
            display = (match.group(2) or title).strip()
            return f"[{display}](/{slugs.generate(title)})"

        return WIKI_LINK_RE.sub(replace, text)

    def _render(self, text: str) -> str:
        md = markdown.Markdown(
            extensions=MARKDOWN_EXTENSIONS,
            extension_configs=MARKDOWN_EXTENSION_CONFIGS,
            output_format="html",
        )
        return md.convert(text)

    def to_html(self, text: str | None) -> str:
        if not text:
            return ""
        plugins = self._extensions()
        plugin_ids = [p.metadata.id for p in plugins]
        cache_key = CacheKeys.markdown_html(_content_hash(text), _plugins_hash(plugin_ids))
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        source = text
        for plugin in plugins:
            try:
                source = plugin.pre_process_markdown(source)
            except Exception:
                logger.exception("Markdown plugin %s failed during pre-processing", plugin.metadata.id)

        source = self.convert_wiki_links(source)
        rendered = self._render(source)

        for plugin in plugins:
            try:
                rendered = plugin.post_process_html(rendered)
            except Exception:
                logger.exception("Markdown plugin %s failed during post-processing", plugin.metadata.id)

        self.cache.set(cache_key, rendered)
        return rendered

    @staticmethod
    def to_plain_text(html: str | None) -> str:
        if not html:
            return ""
        stripped = TAG_RE.sub(" ", html)
        stripped = html_lib.unescape(stripped)
        return WHITESPACE_RE.sub(" ", stripped).strip()

    @staticmethod
    def process_tokens(html: str | None) -> str:
        if not html:
            return ""
        out = html
        for token, replacement in TOKEN_REPLACEMENTS.items():
            out = re.sub(re.escape(token), replacement, out, flags=re.IGNORECASE)
        return out

    @staticmethod
    def extract_page_links(text: str | None) -> list[str]:
        if not text:
            return []
        found: list[str] = []
        seen: set[str] = set()

        def add(target: str | None) -> None:
            if not target:
                return
            key = target.lower()
            if key not in seen:
                seen.add(key)
                found.append(target)

        for match in WIKI_LINK_RE.finditer(text):
            add(match.group(1).strip())
        for match in MARKDOWN_LINK_RE.finditer(text):
            add(_link_target(match.group(2)))
        return found

    @staticmethod
    def update_page_links(text: str, old_title: str, new_title: str) -> str:
        if not text or not old_title or old_title == new_title:
            return text

        wiki_re = re.compile(r"\[\[\s*" + re.escape(old_title) + r"\s*(\|[^\]]*)?\]\]", re.IGNORECASE)
        out = wiki_re.sub(lambda m: f"[[{new_title}{m.group(1) or ''}]]", text)

        old_slug = slugs.generate(old_title)
        new_slug = slugs.generate(new_title)
        if old_slug and new_slug and old_slug != new_slug:
            md_re = re.compile(
                r"\[([^\]]+)\]\((/?)" + re.escape(old_slug) + r"(?:\.html)?\)",
                re.IGNORECASE,
            )
            out = md_re.sub(lambda m: f"[{m.group(1)}]({m.group(2)}{new_slug})", out)
        return out

    @staticmethod
    def find_internal_slugs(html: str | None) -> list[str]:
        if not html:
            return []
        out: list[str] = []
        for match in INTERNAL_HREF_RE.finditer(html):
            slug = match.group(1).strip()
            if slug and "/" not in slug and slug not in out:
                out.append(slug)
        return out

    @staticmethod
    def convert_internal_links(html: str | None, lookup: Mapping[str, int]) -> str:
        if not html:
            return ""

        def replace(match: re.Match) -> str:
            slug = match.group(1).strip()
            page_id = lookup.get(slug) if slug else None
            if page_id is None:
                return match.group(0)
            return f'href="/wiki/{page_id}/{slug}"'

        return INTERNAL_HREF_RE.sub(replace, html)


@lru_cache
def get_markdown_service() -> MarkdownService:
    return MarkdownService(get_cache(), get_plugin_registry().markdown_extensions)
