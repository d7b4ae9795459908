import pytest

from tests.conftest import wiki_client
from tests.helpers import create_category, create_page


@pytest.mark.asyncio
async def test_create_and_fetch_page():
    async with wiki_client() as client:
        category = await create_category(client, "Guides")
        created = await create_page(
            client, "Getting Started", "# Welcome", category_id=category["id"], tags=["Intro", "intro", "setup"]
        )
        assert created["slug"] == "getting-started"
        assert created["tags"] == ["intro", "setup"]
        assert created["category_name"] == "Guides"
        assert created["created_by"] == "tester"

        resp = await client.get("/api/pages/slug/getting-started")
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

        listed = await client.get("/api/pages", params={"tag": "setup"})
        assert [p["title"] for p in listed.json()] == ["Getting Started"]

        assert (await client.get("/api/pages/slug/missing")).status_code == 404
        missing = await client.get("/api/pages/9999")
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "ENTITY_NOT_FOUND"


@pytest.mark.asyncio
async def test_duplicate_slug_is_rejected():
    async with wiki_client() as client:
        await create_page(client, "Install", slug="install")
        resp = await client.post("/api/pages", json={"title": "Other", "slug": "install"})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "BUSINESS_RULE_VIOLATION"

        available = await client.get("/api/pages/slug-available", params={"slug": "install"})
        assert available.json() == {"slug": "install", "available": False}


@pytest.mark.asyncio
async def test_anonymous_reading_follows_visibility():
    async with wiki_client() as client:
        inherited = await create_page(client, "Inherited", "text")
        public = await create_page(client, "Public", "text", visibility="Public")
        private = await create_page(client, "Private", "text", visibility="Private")

    async with wiki_client(auth_token=None) as anonymous:
        resp = await anonymous.get(f"/api/pages/{inherited['id']}")
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "AUTHENTICATION_REQUIRED"
        assert (await anonymous.get(f"/api/pages/{public['id']}")).status_code == 200
        assert (await anonymous.get(f"/api/pages/{private['id']}")).status_code == 401
        titles = [p["title"] for p in (await anonymous.get("/api/pages")).json()]
        assert titles == ["Public"]

    async with wiki_client() as admin:
        resp = await admin.put("/api/admin/settings/SQUIRREL_ALLOW_ANONYMOUS_READING", json={"value": True})
        assert resp.status_code == 200

    async with wiki_client(auth_token=None) as anonymous:
        assert (await anonymous.get(f"/api/pages/{inherited['id']}")).status_code == 200
        assert (await anonymous.get(f"/api/pages/{private['id']}")).status_code == 401


@pytest.mark.asyncio
async def test_roles_gate_editing():
    async with wiki_client() as admin:
        page = await create_page(admin, "Locked", "text", is_locked=True)
        assert page["is_locked"]

    async with wiki_client(auth_token=None) as anonymous:
        resp = await anonymous.post("/api/pages", json={"title": "Nope"})
        assert resp.status_code == 401

    async with wiki_client(auth_token="reader-token", username="reader", is_admin=False, is_editor=False) as reader:
        resp = await reader.post("/api/pages", json={"title": "Nope"})
        assert resp.status_code == 403
        assert (await reader.get(f"/api/pages/{page['id']}")).status_code == 200

    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False, is_editor=True) as editor:
        resp = await editor.put(f"/api/pages/{page['id']}", json={"title": "Locked", "content": "changed"})
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "AUTHORIZATION_FAILED"
        assert (await editor.delete(f"/api/pages/{page['id']}")).status_code == 403

        own = await create_page(editor, "Editable", "v1", is_locked=True)
        assert not own["is_locked"]
        resp = await editor.put(f"/api/pages/{own['id']}", json={"title": "Editable", "content": "v2"})
        assert resp.status_code == 200
        assert resp.json()["modified_by"] == "ed"


@pytest.mark.asyncio
async def test_render_and_preview():
    async with wiki_client() as client:
        target = await create_page(client, "Target Page", "target")
        page = await create_page(client, "Source", "Go to [[Target Page]].\n\n# Heading")

        rendered = await client.get(f"/api/pages/{page['id']}/render")
        assert rendered.status_code == 200
        body = rendered.json()
        assert f'href="/wiki/{target["id"]}/target-page"' in body["html"]
        assert '<h1 id="heading">Heading</h1>' in body["html"]
        assert body["page"]["title"] == "Source"

        preview = await client.post("/api/pages/preview", json={"content": "**bold**"})
        assert "<strong>bold</strong>" in preview.json()["html"]


@pytest.mark.asyncio
async def test_history_revert_and_compare():
    async with wiki_client() as client:
        await client.put("/api/admin/settings/SQUIRREL_ENABLE_PAGE_VERSIONING", json={"value": True})
        page = await create_page(client, "Notes", "first line")
        resp = await client.put(
            f"/api/pages/{page['id']}",
            json={"title": "Notes", "content": "second line", "change_comment": "rewrite"},
        )
        assert resp.json()["version"] == 2

        history = (await client.get(f"/api/pages/{page['id']}/history")).json()
        assert [v["version_number"] for v in history] == [2, 1]
        assert history[0]["change_comment"] == "rewrite"

        first = await client.get(f"/api/pages/{page['id']}/versions/1")
        assert first.json()["text"] == "first line"
        assert (await client.get(f"/api/pages/{page['id']}/versions/9")).status_code == 404

        compare = await client.get(f"/api/pages/{page['id']}/compare", params={"from_version": 1, "to_version": 2})
        assert any(line.startswith("+second line") for line in compare.json()["diff"])

        reverted = await client.post(f"/api/pages/{page['id']}/revert/1")
        assert reverted.json()["content"] == "first line"
        assert reverted.json()["version"] == 3


@pytest.mark.asyncio
async def test_delete_and_restore():
    async with wiki_client() as admin:
        page = await create_page(admin, "Temporary", "text", visibility="Public")

    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False, is_editor=True) as editor:
        assert (await editor.delete(f"/api/pages/{page['id']}")).status_code == 204
        assert (await editor.get(f"/api/pages/{page['id']}")).status_code == 404
        assert (await editor.post(f"/api/pages/{page['id']}/restore")).status_code == 403

    async with wiki_client() as admin:
        deleted = await admin.get(f"/api/pages/{page['id']}")
        assert deleted.json()["is_deleted"]
        restored = await admin.post(f"/api/pages/{page['id']}/restore")
        assert restored.status_code == 200
        assert not restored.json()["is_deleted"]
        assert [p["title"] for p in (await admin.get("/api/pages")).json()] == ["Temporary"]
