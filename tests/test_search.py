import pytest

from squirrel.src.modules.authorization import ANONYMOUS, VISIBILITY_PRIVATE, VISIBILITY_PUBLIC, Principal
from squirrel.src.modules.categories_service import CategoryService
from squirrel.src.modules.file_storage import LocalFileStorageStrategy
from squirrel.src.modules.files_service import FileService
from squirrel.src.modules.pages_service import PageService
from squirrel.src.modules.plugin_loader import get_plugin_registry
from squirrel.src.modules.search_contracts import SearchRequest, generate_excerpt
from squirrel.src.modules.search_service import DatabaseSearchStrategy, SearchService
from squirrel.src.plugins.whoosh_search import MEMORY_INDEX, WhooshSearchPlugin
from tests.conftest import wiki_client
from tests.helpers import upload_file


async def _enable_whoosh():
    plugin = WhooshSearchPlugin()
    plugin.set_configuration({"IndexPath": MEMORY_INDEX})
    await plugin.initialize()
    registry = get_plugin_registry()
    registry.register(plugin)
    registry.set_enabled(plugin.metadata.id, True)
    return plugin


async def _seed(session):
    guides = await CategoryService(session).create("Guides")
    pages = PageService(session)
    await pages.create("Python Basics", "Learn python step by step.", category_id=guides.id, tags=["python"])
    await pages.create("Advanced Python", "Decorators and python generators.", tags=["python", "advanced"])
    await pages.create("Gardening", "Tomatoes and compost.", tags=["outdoors"])
    await pages.create("Secret Python", "python internals", visibility=VISIBILITY_PRIVATE)
    return guides


def test_excerpt_centres_on_the_match():
    text = "lorem " * 60 + "needle" + " ipsum" * 60
    excerpt = generate_excerpt(text, "needle")
    assert "needle" in excerpt
    assert excerpt.startswith("...")


@pytest.mark.asyncio
async def test_database_fallback_search(session):
    await _seed(session)
    service = SearchService(session)
    assert isinstance(await service.get_strategy(), DatabaseSearchStrategy)

    response = await service.search("python", principal=Principal(username="reader"))
    titles = [r.title for r in response.results]
    assert titles[0] == "Python Basics"
    assert "Gardening" not in titles
    assert response.total_results == 3
    assert response.facets["tags"]["python"] == 2

    anonymous = await service.search("python", principal=ANONYMOUS)
    assert "Secret Python" not in [r.title for r in anonymous.results]


@pytest.mark.asyncio
async def test_filters_and_suggestions(session):
    guides = await _seed(session)
    service = SearchService(session)
    by_category = await service.advanced_search(SearchRequest(query="python", category_ids=[guides.id]))
    assert [r.title for r in by_category.results] == ["Python Basics"]
    by_tag = await service.advanced_search(SearchRequest(query="python", tags=["advanced"]))
    assert [r.title for r in by_tag.results] == ["Advanced Python"]
    suggestions = await service.suggestions("pyth")
    assert suggestions[0] == "Python Basics"
    assert sorted(suggestions[1:]) == ["Advanced Python", "Secret Python"]


@pytest.mark.asyncio
async def test_short_queries_return_nothing(session):
    await _seed(session)
    response = await SearchService(session).search("p")
    assert response.total_results == 0
    assert response.total_pages == 0


@pytest.mark.asyncio
async def test_similar_pages_share_tags(session):
    await _seed(session)
    pages = PageService(session)
    basics = await pages.get_by_slug("python-basics")
    similar = await SearchService(session).find_similar(basics.id)
    assert [r.title for r in similar] == ["Advanced Python"]


@pytest.mark.asyncio
async def test_whoosh_indexes_through_page_events(session):
    plugin = await _enable_whoosh()
    await _seed(session)
    service = SearchService(session)
    assert await service.get_strategy() is plugin.search_strategy

    response = await service.search("generators")
    assert [r.title for r in response.results] == ["Advanced Python"]
    assert response.strategy == "Whoosh"

    filtered = await service.advanced_search(SearchRequest(query="python", tags=["advanced"]))
    assert [r.title for r in filtered.results] == ["Advanced Python"]

    pages = PageService(session)
    garden = await pages.get_by_slug("gardening")
    await pages.delete(garden.id)
    assert (await service.search("tomatoes")).total_results == 0


@pytest.mark.asyncio
async def test_whoosh_rebuild_and_actions(session):
    plugin = await _enable_whoosh()
    await _seed(session)
    service = SearchService(session)

    cleared = await plugin.execute_action("whoosh-clear-index")
    assert cleared.success
    assert (await service.get_stats()).total_documents == 0

    assert await service.rebuild_index() == 4
    assert (await service.get_stats()).total_documents == 4
    assert "Python Basics" in await service.suggestions("pyth")

    missing = await plugin.execute_action("unknown")
    assert not missing.success


@pytest.mark.asyncio
async def test_hidden_pages_are_removed_before_paging(session):
    pages = PageService(session)
    await pages.create("Alpha python", "python", visibility=VISIBILITY_PRIVATE)
    await pages.create("Beta python", "python", visibility=VISIBILITY_PUBLIC)
    await pages.create("Gamma python", "python", visibility=VISIBILITY_PUBLIC)
    service = SearchService(session)

    first = await service.advanced_search(SearchRequest(query="python", page=1, page_size=2), ANONYMOUS)
    assert [r.title for r in first.results] == ["Beta python", "Gamma python"]
    assert first.total_results == 2
    assert first.total_pages == 1
    assert first.facets["categories"] == {}

    second = await service.advanced_search(SearchRequest(query="python", page=2, page_size=2), ANONYMOUS)
    assert second.results == []
    assert second.total_results == 2


@pytest.mark.asyncio
async def test_private_files_stay_out_of_search():
    async with wiki_client() as admin:
        await upload_file(admin, "payroll-secret.txt", b"salaries", visibility="Private")
        await upload_file(admin, "payroll-summary.txt", b"totals", visibility="Public")
        found = (await admin.get("/api/search", params={"q": "payroll"})).json()
        assert sorted(r["title"] for r in found["results"]) == ["payroll-secret.txt", "payroll-summary.txt"]
        assert {r["document_type"] for r in found["results"]} == {"file"}

    async with wiki_client(auth_token=None) as anonymous:
        found = (await anonymous.get("/api/search", params={"q": "payroll"})).json()
        assert [r["title"] for r in found["results"]] == ["payroll-summary.txt"]
        assert found["total_results"] == 1
        listed = (await anonymous.get("/api/files")).json()
        assert [f["file_name"] for f in listed] == ["payroll-summary.txt"]


@pytest.mark.asyncio
async def test_whoosh_indexes_files_through_file_events(session, tmp_path):
    plugin = await _enable_whoosh()
    files = FileService(session, LocalFileStorageStrategy(tmp_path / "files"))
    uploaded = await files.upload(
        b"q3 numbers", "quarterly-report.txt", description="finance summary", visibility=VISIBILITY_PUBLIC
    )
    service = SearchService(session)

    response = await service.search("quarterly")
    assert response.strategy == "Whoosh"
    assert [(r.document_id, r.document_type) for r in response.results] == [(f"file:{uploaded.id}", "file")]
    assert (await service.search("finance", principal=ANONYMOUS)).total_results == 1

    await files.update(uploaded.id, description="budget")
    assert (await service.search("budget")).total_results == 1
    assert (await service.search("finance")).total_results == 0

    await files.delete(uploaded.id)
    assert (await plugin.search_strategy.get_index_stats()).total_documents == 0


@pytest.mark.asyncio
async def test_rebuild_includes_live_files(session, tmp_path):
    plugin = await _enable_whoosh()
    await _seed(session)
    files = FileService(session, LocalFileStorageStrategy(tmp_path / "files"))
    await files.upload(b"minutes", "meeting-notes.txt")
    gone = await files.upload(b"old", "obsolete.txt")
    await files.delete(gone.id)

    await plugin.execute_action("whoosh-clear-index")
    assert await SearchService(session).rebuild_index() == 5
    hits = await SearchService(session).search("meeting")
    assert [r.title for r in hits.results] == ["meeting-notes.txt"]
