from __future__ import annotations

import html as html_lib
import logging
import re

from squirrel.src.modules.plugin_contracts import (
    ConfigType,
    MarkdownExtensionPlugin,
    PluginConfigurationItem,
    PluginMetadata,
    PluginType,
)

logger = logging.getLogger(__name__)

PLUGIN_ID = "squirrel.wiki.plugins.markdown.tableofcontents"
DEFAULT_MAX_DEPTH = 3

# markdown wraps a lone placeholder in a paragraph; swallow it so the nav is not nested in <p>
TOC_PLACEHOLDER_RE = re.compile(r"(?:<p>\s*)?\{\{toc\}\}(?:\s*</p>)?", re.IGNORECASE)
HEADING_RE = re.compile(r'<h([1-6])[^>]*\bid="([^"]+)"[^>]*>(.*?)</h\1>', re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r"<.*?>", re.DOTALL)

NO_HEADINGS_HTML = '<div class="toc"><p><em>No headings found</em></p></div>'


def _strip_tags(fragment: str) -> str:
    return html_lib.unescape(TAG_RE.sub("", fragment)).strip()


def build_table_of_contents(html: str, max_depth: int = DEFAULT_MAX_DEPTH) -> str:
    """Nested <ul> of the headings in html whose level is at most max_depth."""
    headings = [
        (int(level), anchor, _strip_tags(inner))
        for level, anchor, inner in HEADING_RE.findall(html)
        if int(level) <= max_depth
    ]
    if not headings:
        return NO_HEADINGS_HTML

    base = min(level for level, _, _ in headings)
    lines = [
        '<nav class="toc" role="navigation">',
        '<h2 class="toc-title">Table of Contents</h2>',
        '<ul class="toc-list">',
    ]
    depth = 0
    open_item = False
    for level, anchor, text in headings:
        target = level - base
        if target > depth:
            while depth < target:
                if not open_item:
                    lines.append('<li class="toc-item">')
                lines.append('<ul class="toc-list-nested">')
                depth += 1
                open_item = False
        else:
            if open_item:
                lines.append("</li>")
            while depth > target:
                lines.append("</ul>")
                lines.append("</li>")
                depth -= 1
        lines.append(f'<li class="toc-item toc-level-{level}">')
        lines.append(f'<a href="#{html_lib.escape(anchor)}" class="toc-link">{html_lib.escape(text)}</a>')
        open_item = True
    if open_item:
        lines.append("</li>")
    while depth > 0:
        lines.append("</ul>")
        lines.append("</li>")
        depth -= 1
    lines.append("</ul>")
    lines.append("</nav>")
    return "\n".join(lines)


class TableOfContentsPlugin(MarkdownExtensionPlugin):
    _metadata = PluginMetadata(
        id=PLUGIN_ID,
        name="Table of Contents",
        description="Generates a table of contents from markdown headings using the {{toc}} placeholder",
        version="1.0.0",
        author="Squirrel Wiki",
        type=PluginType.MARKDOWN_EXTENSION,
        requires_configuration=False,
        configuration=[
            PluginConfigurationItem(
                key="MaxDepth",
                display_name="Maximum Heading Depth",
                description="Maximum heading level to include (1-6, default: 3)",
                type=ConfigType.NUMBER,
                default_value=str(DEFAULT_MAX_DEPTH),
                validation_pattern=r"^[1-6]$",
                validation_error_message="Maximum depth must be a number between 1 and 6",
            )
        ],
    )

    @property
    def metadata(self) -> PluginMetadata:
        return self._metadata

    @property
    def max_depth(self) -> int:
        depth = self.get_config_int("MaxDepth", DEFAULT_MAX_DEPTH)
        return depth if 1 <= depth <= 6 else DEFAULT_MAX_DEPTH

    def post_process_html(self, html: str) -> str:
        if not html or not TOC_PLACEHOLDER_RE.search(html):
            return html
        toc = build_table_of_contents(html, self.max_depth)
        logger.debug("Rendered table of contents (max depth %d)", self.max_depth)
        return TOC_PLACEHOLDER_RE.sub(lambda _m: toc, html)


def get_plugins():
    return [TableOfContentsPlugin()]
