import pytest

from tests.conftest import wiki_client
from tests.helpers import create_category, create_page


@pytest.mark.asyncio
async def test_category_endpoints():
    async with wiki_client() as client:
        docs = await create_category(client, "Docs")
        guides = await create_category(client, "Guides", parent_id=docs["id"])
        assert guides["full_path"] == "Docs / Guides"
        assert guides["level"] == 1
        await create_page(client, "Install", category_id=guides["id"])

        by_path = await client.get("/api/categories/by-path", params={"path": "docs/guides"})
        assert by_path.json()["id"] == guides["id"]
        tree = (await client.get("/api/categories/tree")).json()
        assert tree[0]["children"][0]["name"] == "Guides"

        count = await client.get(f"/api/categories/{docs['id']}/page-count", params={"include_subcategories": True})
        assert count.json()["page_count"] == 1

        cycle = await client.post(f"/api/categories/{docs['id']}/move", json={"new_parent_id": guides["id"]})
        assert cycle.status_code == 422

        resp = await client.delete(f"/api/categories/{guides['id']}")
        assert resp.status_code == 204
        pages = (await client.get("/api/pages", params={"category_id": docs["id"]})).json()
        assert [p["title"] for p in pages] == ["Install"]

    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False) as editor:
        assert (await editor.delete(f"/api/categories/{docs['id']}")).status_code == 403


@pytest.mark.asyncio
async def test_tag_endpoints():
    async with wiki_client() as client:
        await create_page(client, "One", tags=["python", "web"])
        await create_page(client, "Two", tags=["python"])
        await create_page(client, "Three", tags=["Py"])

        tags = {t["name"]: t["page_count"] for t in (await client.get("/api/tags")).json()}
        assert tags == {"py": 1, "python": 2, "web": 1}
        related = (await client.get("/api/tags/python/related")).json()
        assert [t["name"] for t in related] == ["web"]

        merged = await client.post("/api/tags/merge", json={"source": "py", "target": "python"})
        assert merged.json()["page_count"] == 3
        assert (await client.get("/api/tags/py")).status_code == 404

        cloud = (await client.get("/api/tags/cloud")).json()
        assert cloud[0]["name"] == "python"

        renamed = await client.put("/api/tags/web", json={"new_name": "www"})
        assert renamed.json()["name"] == "www"
        stats = (await client.get("/api/tags/stats")).json()
        assert stats["total_tags"] == 2


@pytest.mark.asyncio
async def test_menu_endpoints():
    async with wiki_client() as client:
        await create_page(client, "Install Guide", slug="install")
        resp = await client.post(
            "/api/menus",
            json={"name": "main", "menu_type": 1, "markup": "* [Home](%HOME%)\n* [Docs]\n** [Install](install)"},
        )
        assert resp.status_code == 201
        menu = resp.json()
        assert menu["is_enabled"]

        rendered = (await client.get("/api/menus/active/1/render")).json()["html"]
        assert 'href="/"' in rendered
        assert "/wiki/" in rendered and "/install" in rendered

        check = (await client.post("/api/menus/validate", json={"markup": ""})).json()
        assert check["warnings"] == ["Menu markup is empty."]

        parsed = (await client.post("/api/menus/parse", json={"markup": "* [A](%ALLPAGES%)"})).json()
        assert parsed["items"][0]["url"] == "/Pages/AllPages"

        deactivated = await client.post(f"/api/menus/{menu['id']}/deactivate")
        assert not deactivated.json()["is_enabled"]
        assert (await client.get("/api/menus/active/1")).status_code == 404
        assert (await client.get("/api/menus/active/1/render")).json() == {"html": ""}

    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False) as editor:
        assert (await editor.get("/api/menus")).status_code == 403


@pytest.mark.asyncio
async def test_search_endpoints():
    async with wiki_client() as client:
        await create_page(client, "Python Basics", "learn python", tags=["python"])
        await create_page(client, "Cooking", "pasta recipes")
        found = (await client.get("/api/search", params={"q": "python"})).json()
        assert found["total_results"] == 1
        assert found["results"][0]["title"] == "Python Basics"
        assert found["strategy"] == "Database"

        tagged = (await client.get("/api/search", params={"q": "python", "tag": "python"})).json()
        assert tagged["total_results"] == 1

        suggestions = (await client.get("/api/search/suggest", params={"q": "pyt"})).json()
        assert suggestions["suggestions"] == ["Python Basics"]

        advanced = (await client.post("/api/search/advanced", json={"query": "pasta", "page_size": 500})).json()
        assert advanced["page_size"] == 100
        assert [r["title"] for r in advanced["results"]] == ["Cooking"]

    async with wiki_client(auth_token=None) as anonymous:
        assert (await anonymous.get("/api/search", params={"q": "python"})).json()["total_results"] == 0
        assert (await anonymous.get("/api/search/stats")).status_code == 401
