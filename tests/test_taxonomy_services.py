import pytest

from squirrel.src.modules.categories_service import (
    DELETE_MOVE_TO_CATEGORY,
    DELETE_UNCATEGORIZE,
    CategoryService,
)
from squirrel.src.modules.errors import BusinessRuleException, EntityNotFoundException
from squirrel.src.modules.pages_service import PageService
from squirrel.src.modules.tags_service import TagService, normalize_tags


@pytest.mark.asyncio
async def test_category_paths_and_tree(session):
    categories = CategoryService(session)
    docs = await categories.create("Docs")
    guides = await categories.create("Guides", parent_id=docs.id)
    setup = await categories.create("Setup", parent_id=guides.id)

    assert setup.level == 2
    assert setup.full_path == "Docs / Guides / Setup"
    assert await categories.get_full_path(setup.id) == "Docs / Guides / Setup"
    assert (await categories.get_by_path("docs/guides/setup")).id == setup.id
    assert await categories.get_by_path("docs/missing") is None

    tree = await categories.get_tree()
    assert [node.name for node in tree] == ["Docs"]
    assert tree[0].find(setup.id).name == "Setup"


@pytest.mark.asyncio
async def test_category_depth_is_limited(session):
    categories = CategoryService(session)
    a = await categories.create("A")
    b = await categories.create("B", parent_id=a.id)
    c = await categories.create("C", parent_id=b.id)
    with pytest.raises(BusinessRuleException):
        await categories.create("D", parent_id=c.id)


@pytest.mark.asyncio
async def test_sibling_names_must_be_unique(session):
    categories = CategoryService(session)
    parent = await categories.create("Parent")
    await categories.create("Child", parent_id=parent.id)
    with pytest.raises(BusinessRuleException):
        await categories.create("child", parent_id=parent.id)
    other = await categories.create("Child")
    assert other.parent_id is None


@pytest.mark.asyncio
async def test_move_rejects_cycles(session):
    categories = CategoryService(session)
    root = await categories.create("Root")
    child = await categories.create("Leaf", parent_id=root.id)
    assert not await categories.validate_move(root.id, child.id)
    with pytest.raises(BusinessRuleException):
        await categories.move(root.id, child.id)
    moved = await categories.move(child.id, None)
    assert moved.parent_id is None


@pytest.mark.asyncio
async def test_delete_reassigns_pages(session):
    categories = CategoryService(session)
    pages = PageService(session)
    parent = await categories.create("Parent")
    child = await categories.create("Child", parent_id=parent.id)
    other = await categories.create("Other")
    page = await pages.create("In child", category_id=child.id)

    with pytest.raises(BusinessRuleException):
        await categories.delete(parent.id)

    await categories.delete(child.id)
    assert (await pages.get_by_id(page.id)).category_id == parent.id

    await categories.delete(parent.id, DELETE_MOVE_TO_CATEGORY, target_category_id=other.id)
    assert (await pages.get_by_id(page.id)).category_id == other.id

    await categories.delete(other.id, DELETE_UNCATEGORIZE)
    assert (await pages.get_by_id(page.id)).category_id is None
    with pytest.raises(EntityNotFoundException):
        await categories.get_by_id(other.id)


@pytest.mark.asyncio
async def test_page_count_includes_subcategories(session):
    categories = CategoryService(session)
    pages = PageService(session)
    parent = await categories.create("Parent")
    child = await categories.create("Child", parent_id=parent.id)
    await pages.create("One", category_id=parent.id)
    await pages.create("Two", category_id=child.id)
    assert await categories.get_page_count(parent.id) == 1
    assert await categories.get_page_count(parent.id, include_subcategories=True) == 2
    assert not await categories.can_delete(parent.id)


def test_normalize_tags_dedupes_and_lowercases():
    assert normalize_tags(["Python", "python ", "", None, "Web"]) == ["python", "web"]


@pytest.mark.asyncio
async def test_tag_counts_rename_and_merge(session):
    pages = PageService(session)
    tags = TagService(session)
    await pages.create("One", tags=["py", "web"])
    await pages.create("Two", tags=["python"])
    await pages.create("Three", tags=["py"])

    assert (await tags.get_by_name("py")).page_count == 2

    merged = await tags.merge("py", "python")
    assert merged.name == "python"
    assert merged.page_count == 3
    assert await tags.get_by_name("py") is None

    renamed = await tags.rename("web", "frontend")
    assert renamed.page_count == 1
    with pytest.raises(BusinessRuleException):
        await tags.rename("frontend", "python")


@pytest.mark.asyncio
async def test_tag_cloud_weights_and_cleanup(session):
    pages = PageService(session)
    tags = TagService(session)
    for i in range(4):
        await pages.create(f"Busy {i}", tags=["busy"])
    await pages.create("Quiet", tags=["quiet"])
    await tags.create("orphan")

    cloud = {item.name: item for item in await tags.get_tag_cloud()}
    assert cloud["busy"].weight > cloud["quiet"].weight
    assert "orphan" not in cloud

    assert await tags.cleanup_unused() == 1
    assert await tags.get_by_name("orphan") is None

    related = await tags.get_related("busy")
    assert related == []
