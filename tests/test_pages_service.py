import pytest

from squirrel.src.modules.categories_service import CategoryService
from squirrel.src.modules.errors import AuthorizationException, BusinessRuleException, ValidationException
from squirrel.src.modules.pages_service import PageContentService, PageRenderingService, PageService
from squirrel.src.modules.wiki_config import ConfigurationService


async def _enable_versioning(session):
    await ConfigurationService(session).set_value("SQUIRREL_ENABLE_PAGE_VERSIONING", True)


@pytest.mark.asyncio
async def test_create_generates_unique_slugs(session):
    pages = PageService(session)
    first = await pages.create("Getting Started", "Hello", author="alice")
    second = await pages.create("Getting Started", "Again", author="alice")
    assert first.slug == "getting-started"
    assert second.slug == "getting-started-1"
    assert first.version == 1
    assert first.created_by == "alice"


@pytest.mark.asyncio
async def test_explicit_duplicate_slug_is_rejected(session):
    pages = PageService(session)
    await pages.create("One", slug="shared")
    with pytest.raises(BusinessRuleException) as err:
        await pages.create("Two", slug="shared")
    assert err.value.rule_code == "SLUG_EXISTS"


@pytest.mark.asyncio
async def test_blank_title_is_a_validation_error(session):
    with pytest.raises(ValidationException):
        await PageService(session).create("   ", "text")


@pytest.mark.asyncio
async def test_tags_are_normalized_and_queryable(session):
    pages = PageService(session)
    created = await pages.create("Tagged", tags=["Python", " python ", "Docs"])
    assert sorted(created.tags) == ["docs", "python"]
    found = await pages.get_by_tag("PYTHON")
    assert [p.id for p in found] == [created.id]


@pytest.mark.asyncio
async def test_update_without_versioning_rewrites_latest(session):
    pages = PageService(session)
    created = await pages.create("Draft", "v1", author="alice")
    updated = await pages.update(created.id, "Draft", "v2", editor="bob")
    assert updated.content == "v2"
    assert updated.version == 1
    assert updated.modified_by == "bob"


@pytest.mark.asyncio
async def test_update_with_versioning_adds_history(session):
    await _enable_versioning(session)
    pages = PageService(session)
    created = await pages.create("Versioned", "v1")
    await pages.update(created.id, "Versioned", "v2", change_comment="second")
    history = await PageContentService(session).get_history(created.id)
    assert [h.version_number for h in history] == [2, 1]
    assert history[0].change_comment == "second"


@pytest.mark.asyncio
async def test_revert_and_compare(session):
    await _enable_versioning(session)
    pages = PageService(session)
    contents = PageContentService(session)
    created = await pages.create("History", "line one")
    await pages.update(created.id, "History", "line two")

    reverted = await contents.revert(created.id, 1, editor="carol")
    assert reverted.content == "line one"
    assert reverted.version == 3
    latest = await contents.get_version(created.id, 3)
    assert latest.change_comment == "Reverted to version 1"

    comparison = await contents.compare(created.id, 1, 2)
    assert "-line one" in comparison.diff
    assert "+line two" in comparison.diff


@pytest.mark.asyncio
async def test_locked_page_needs_admin(session):
    pages = PageService(session)
    created = await pages.create("Locked", "x", is_locked=True)
    with pytest.raises(AuthorizationException):
        await pages.update(created.id, "Locked", "y", editor="bob")
    updated = await pages.update(created.id, "Locked", "y", editor="root", editor_is_admin=True)
    assert updated.content == "y"


@pytest.mark.asyncio
async def test_rename_rewrites_links_in_other_pages(session):
    pages = PageService(session)
    target = await pages.create("Old Name", "target")
    linking = await pages.create("Linker", "See [[Old Name]] and [here](/old-name).")
    await pages.update(target.id, "New Name", "target")
    refreshed = await pages.get_by_id(linking.id)
    assert "[[New Name]]" in refreshed.content
    assert "(/new-name)" in refreshed.content


@pytest.mark.asyncio
async def test_soft_delete_and_restore(session):
    pages = PageService(session)
    created = await pages.create("Ephemeral", "gone soon")
    await pages.delete(created.id, deleted_by="alice")
    assert (await pages.get_by_id(created.id)).is_deleted
    assert created.id not in [p.id for p in await pages.get_all()]
    restored = await pages.restore(created.id)
    assert not restored.is_deleted
    assert created.id in [p.id for p in await pages.get_all()]


@pytest.mark.asyncio
async def test_category_and_home_page_queries(session):
    category = await CategoryService(session).create("Guides")
    pages = PageService(session)
    guide = await pages.create("Install", category_id=category.id)
    home = await pages.create("Welcome", tags=["homepage"])
    assert [p.id for p in await pages.get_by_category(category.id)] == [guide.id]
    assert (await pages.get_home_page()).id == home.id
    assert guide.category_name == "Guides"


@pytest.mark.asyncio
async def test_search_matches_title_and_content(session):
    pages = PageService(session)
    await pages.create("Alpha", "nothing here")
    beta = await pages.create("Beta", "mentions alpha inside")
    await pages.create("Gamma", "unrelated")
    found = await pages.search("alpha")
    assert sorted(p.title for p in found) == ["Alpha", "Beta"]
    assert beta.id in [p.id for p in found]
    assert await pages.search("  ") == []


@pytest.mark.asyncio
async def test_render_links_resolve_to_page_urls(session):
    pages = PageService(session)
    target = await pages.create("Target Page", "body")
    html = await PageRenderingService(session).render_content("Go to [[Target Page]].")
    assert f'href="/wiki/{target.id}/target-page"' in html
