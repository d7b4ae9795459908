import pytest

from tests.conftest import wiki_client
from tests.helpers import create_folder, upload_file


@pytest.mark.asyncio
async def test_upload_and_download():
    async with wiki_client() as client:
        uploaded = await upload_file(client, "readme.txt", b"hello files", description="intro", visibility="Public")
        assert uploaded["file_size"] == 11
        assert uploaded["uploaded_by"] == "tester"
        assert uploaded["url"] == f"/api/files/{uploaded['id']}/download"
        assert "file_path" not in uploaded

        resp = await client.get(uploaded["url"])
        assert resp.status_code == 200
        assert resp.content == b"hello files"
        assert resp.headers["content-type"].startswith("text/plain")
        assert resp.headers["content-disposition"] == "inline; filename*=UTF-8''readme.txt"
        assert resp.headers["cache-control"] == "private, max-age=3600"

    async with wiki_client(auth_token=None) as anonymous:
        assert (await anonymous.get(uploaded["url"])).status_code == 200


@pytest.mark.asyncio
async def test_upload_validation_and_permissions():
    async with wiki_client() as client:
        resp = await client.post("/api/files", files={"file": ("tool.exe", b"MZ", "application/octet-stream")})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"
        private = await upload_file(client, "private.txt", b"secret")

    async with wiki_client(auth_token="reader-token", username="reader", is_admin=False, is_editor=False) as reader:
        resp = await reader.post("/api/files", files={"file": ("a.txt", b"a", "text/plain")})
        assert resp.status_code == 403
        assert (await reader.get(f"/api/files/{private['id']}")).status_code == 200

    async with wiki_client(auth_token=None) as anonymous:
        assert (await anonymous.get(f"/api/files/{private['id']}/download")).status_code == 401

    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False, is_editor=True) as editor:
        resp = await editor.delete(f"/api/files/{private['id']}", params={"permanent": True})
        assert resp.status_code == 403
        assert (await editor.delete(f"/api/files/{private['id']}")).status_code == 204
        assert (await editor.get(f"/api/files/{private['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_versions_and_rename():
    async with wiki_client() as client:
        uploaded = await upload_file(client, "notes.md", b"v1", "text/markdown")
        resp = await client.post(
            f"/api/files/{uploaded['id']}/versions",
            files={"file": ("notes.md", b"v2 content", "text/markdown")},
            data={"change_description": "expanded"},
        )
        assert resp.json()["current_version"] == 2
        versions = (await client.get(f"/api/files/{uploaded['id']}/versions")).json()
        assert [v["version_number"] for v in versions] == [2, 1]
        assert (await client.get(uploaded["url"])).content == b"v2 content"

        renamed = await client.put(f"/api/files/{uploaded['id']}", json={"file_name": "guide.md"})
        assert renamed.json()["file_name"] == "guide.md"


@pytest.mark.asyncio
async def test_folders_and_paths():
    async with wiki_client() as client:
        docs = await create_folder(client, "Docs")
        manuals = await create_folder(client, "Manuals", parent_id=docs["id"])
        assert manuals["slug"] == "manuals"
        uploaded = await upload_file(client, "setup.txt", b"steps", folder_id=manuals["id"])

        found = await client.get("/api/files/by-path", params={"path": "docs/manuals/setup.txt"})
        assert found.json()["id"] == uploaded["id"]
        listed = await client.get("/api/files", params={"folder_id": manuals["id"]})
        assert [f["file_name"] for f in listed.json()] == ["setup.txt"]

        tree = (await client.get("/api/folders/tree")).json()
        assert tree[0]["name"] == "Docs"
        assert tree[0]["children"][0]["file_count"] == 1
        crumbs = (await client.get(f"/api/folders/{manuals['id']}/breadcrumb")).json()
        assert [c["name"] for c in crumbs] == ["Docs", "Manuals"]

        duplicate = await client.post("/api/folders", json={"name": "manuals", "parent_id": docs["id"]})
        assert duplicate.status_code == 400
        assert duplicate.json()["error_code"] == "FOLDER_ERROR"

        moved = await client.post(f"/api/files/{uploaded['id']}/move", json={"folder_id": docs["id"]})
        assert moved.json()["folder_id"] == docs["id"]

        assert (await client.delete(f"/api/folders/{docs['id']}")).status_code == 400
        assert (await client.delete(f"/api/folders/{docs['id']}", params={"recursive": True})).status_code == 204
        assert (await client.get("/api/folders")).json() == []
