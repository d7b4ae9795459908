import pytest

from squirrel.src.modules.cache import TTLCache
from squirrel.src.modules.errors import BusinessRuleException
from squirrel.src.modules.markdown_service import MarkdownService
from squirrel.src.modules.menus_service import MenuService, MenuType, parse_markup, render_navbar, validate_markup
from squirrel.src.plugins.table_of_contents import NO_HEADINGS_HTML, TableOfContentsPlugin, build_table_of_contents


def _markdown(*plugins):
    return MarkdownService(TTLCache(), lambda: list(plugins))


def test_wiki_links_become_slug_links():
    md = _markdown()
    assert md.convert_wiki_links("See [[Getting Started]]") == "See [Getting Started](/getting-started)"
    assert md.convert_wiki_links("[[Install Guide|install]]") == "[install](/install-guide)"


def test_to_html_renders_extensions():
    html = _markdown().to_html("# Title\n\n| a | b |\n|---|---|\n| 1 | 2 |\n\n~~gone~~")
    assert '<h1 id="title">Title</h1>' in html
    assert "<table>" in html
    assert "<del>gone</del>" in html
    assert _markdown().to_html("") == ""


def test_mermaid_fence_renders_as_div():
    html = _markdown().to_html("```mermaid\ngraph TD; A-->B;\n```")
    assert '<div class="mermaid">' in html


def test_tokens_and_plain_text():
    html = MarkdownService.process_tokens("<p>@@toc@@</p>")
    assert 'data-token="toc"' in html
    assert MarkdownService.to_plain_text("<p>Hello &amp; <b>bye</b></p>") == "Hello & bye"


def test_extract_and_update_page_links():
    text = "[[Alpha]] and [beta](/beta.html) and [ext](https://example.com) and [[alpha|again]]"
    assert MarkdownService.extract_page_links(text) == ["Alpha", "beta"]
    updated = MarkdownService.update_page_links("[[Alpha|label]] [x](alpha)", "Alpha", "Omega")
    assert updated == "[[Omega|label]] [x](omega)"


def test_convert_internal_links_only_rewrites_known_slugs():
    html = '<a href="/known">k</a> <a href="/unknown">u</a>'
    out = MarkdownService.convert_internal_links(html, {"known": 5})
    assert 'href="/wiki/5/known"' in out
    assert 'href="/unknown"' in out


def test_table_of_contents_nests_headings():
    html = '<h1 id="a">A</h1><h2 id="b">B &amp; C</h2><h3 id="c">C</h3><h4 id="d">D</h4><h1 id="e">E</h1>'
    toc = build_table_of_contents(html, max_depth=3)
    assert '<a href="#a" class="toc-link">A</a>' in toc
    assert '<a href="#b" class="toc-link">B &amp; C</a>' in toc
    assert "#d" not in toc
    assert toc.count('<ul class="toc-list-nested">') == 2
    assert build_table_of_contents("<p>none</p>") == NO_HEADINGS_HTML


def test_toc_plugin_replaces_placeholder_during_render():
    plugin = TableOfContentsPlugin()
    plugin.set_configuration({"MaxDepth": "2"})
    html = _markdown(plugin).to_html("{{toc}}\n\n# One\n\n## Two\n\n### Three")
    assert '<nav class="toc"' in html
    assert "{{toc}}" not in html
    assert 'href="#three"' not in html
    assert plugin.validate_configuration({"MaxDepth": "9"}).is_valid is False


def test_parse_markup_builds_tree():
    items = parse_markup("* [Home](%HOME%)\n* [Docs]\n** [Install](install)\n** [FAQ](faq)\nnoise\n* [Search](%EMBEDDED_SEARCH%)")
    assert [i.text for i in items] == ["Home", "Docs", "Search"]
    assert items[1].url is None
    assert [c.text for c in items[1].children] == ["Install", "FAQ"]


def test_render_navbar_dropdown_and_search():
    html = render_navbar(parse_markup("* [Docs]\n** [Install](/install)\n* [Find](%EMBEDDED_SEARCH%)\n* [A&B](/ab)"))
    assert "dropdown-menu" in html
    assert 'href="/install"' in html
    assert 'action="/Search"' in html
    assert "A&amp;B" in html


def test_validate_markup_warnings():
    assert validate_markup("").warnings == ["Menu markup is empty."]
    result = validate_markup("* [Home](%home%)")
    assert result.is_valid
    assert any("casing" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_only_one_active_menu_per_type(session):
    menus = MenuService(session)
    first = await menus.create("main-navigation", MenuType.MAIN_NAVIGATION, "* [Home](%HOME%)")
    second = await menus.create("alt-navigation", MenuType.MAIN_NAVIGATION, "* [Alt](/alt)")
    assert first.is_enabled
    assert not second.is_enabled

    await menus.activate(second.id)
    assert not (await menus.get_by_id(first.id)).is_enabled
    assert (await menus.get_active_by_type(MenuType.MAIN_NAVIGATION)).id == second.id

    with pytest.raises(BusinessRuleException):
        await menus.create("alt-navigation", MenuType.FOOTER)


@pytest.mark.asyncio
async def test_render_menu_resolves_tokens(session):
    menus = MenuService(session)
    menu = await menus.create("footer", MenuType.FOOTER, "* [Home](%HOME%)\n* [Tagged](tag:news)")
    html = await menus.render_menu(menu.id)
    assert 'href="/"' in html
    assert 'href="/Pages/AllPages?tag=news"' in html
