import pytest

from squirrel.src.modules.plugin_loader import get_plugin_registry
from squirrel.src.modules.plugin_service import PluginService
from squirrel.src.plugins.oidc_auth import OidcAuthenticationPlugin
from squirrel.src.plugins.table_of_contents import TableOfContentsPlugin
from tests.conftest import wiki_client
from tests.helpers import OIDC_CONFIG


@pytest.mark.asyncio
async def test_admin_routes_require_admin():
    async with wiki_client(auth_token=None) as anonymous:
        assert (await anonymous.get("/api/admin/settings")).status_code == 401
    async with wiki_client(auth_token="editor-token", username="ed", is_admin=False) as editor:
        resp = await editor.get("/api/admin/users")
        assert resp.status_code == 403
        assert resp.json() == {"detail": "Forbidden"}


@pytest.mark.asyncio
async def test_settings_sources_and_updates():
    async with wiki_client() as client:
        settings = {s["key"]: s for s in (await client.get("/api/admin/settings")).json()}
        admin_password = settings["SQUIRREL_ADMIN_PASSWORD"]
        assert admin_password["value"] == "********"
        assert admin_password["source"] == "EnvironmentVariable"
        assert admin_password["is_read_only"]
        assert settings["SQUIRREL_SEARCH_RESULTS_PER_PAGE"]["source"] == "Default"

        resp = await client.put("/api/admin/settings/SQUIRREL_SEARCH_RESULTS_PER_PAGE", json={"value": 50})
        assert resp.status_code == 200
        assert resp.json()["value"] == 50
        assert resp.json()["source"] == "Database"

        bad = await client.put("/api/admin/settings/SQUIRREL_MAX_LOGIN_ATTEMPTS", json={"value": 100})
        assert bad.status_code == 400
        assert bad.json()["error_code"] == "VALIDATION_ERROR"

        assert (await client.get("/api/admin/settings/NOPE")).status_code == 404
        cleared = await client.post("/api/admin/settings/invalidate-cache")
        assert cleared.json() == {"invalidated": "*"}


@pytest.mark.asyncio
async def test_user_management():
    async with wiki_client(user_id="self-id") as client:
        resp = await client.post(
            "/api/admin/users",
            json={"username": "bob", "email": "bob@example.com", "password": "Secret123!", "is_editor": True},
        )
        assert resp.status_code == 201
        bob = resp.json()
        assert bob["roles"] == ["Editor"]
        assert "password_hash" not in bob

        weak = await client.post(
            "/api/admin/users", json={"username": "weak", "email": "weak@example.com", "password": "x"}
        )
        assert weak.status_code == 400

        promoted = await client.post(f"/api/admin/users/{bob['id']}/roles/admin")
        assert promoted.json()["roles"] == ["Admin", "Editor"]
        demoted = await client.delete(f"/api/admin/users/{bob['id']}/roles/admin")
        assert demoted.json()["roles"] == ["Editor"]
        assert (await client.post(f"/api/admin/users/{bob['id']}/roles/owner")).status_code == 404

        locked = await client.post(f"/api/admin/users/{bob['id']}/lock", json={"minutes": 30})
        assert locked.json()["is_locked"]
        assert not (await client.post(f"/api/admin/users/{bob['id']}/unlock")).json()["is_locked"]

        updated = await client.put(f"/api/admin/users/{bob['id']}", json={"display_name": "Bobby"})
        assert updated.json()["display_name"] == "Bobby"

        self_demote = await client.delete("/api/admin/users/self-id/roles/admin")
        assert self_demote.status_code == 422
        assert (await client.delete("/api/admin/users/self-id")).status_code == 422

        assert (await client.delete(f"/api/admin/users/{bob['id']}")).status_code == 204
        assert (await client.get(f"/api/admin/users/{bob['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_plugin_management(session):
    service = PluginService(session)
    oidc = await service.register(OidcAuthenticationPlugin())
    toc = await service.register(TableOfContentsPlugin())

    async with wiki_client() as client:
        plugins = {p["plugin_id"]: p for p in (await client.get("/api/admin/plugins")).json()}
        assert set(plugins) == {oidc.plugin_id, toc.plugin_id}

        refused = await client.post(f"/api/admin/plugins/{oidc.id}/enable")
        assert refused.status_code == 422

        check = await client.post(f"/api/admin/plugins/{oidc.id}/validate", json={"configuration": {}})
        assert not check.json()["is_valid"]
        assert "Authority" in check.json()["errors"]

        configured = await client.put(f"/api/admin/plugins/{oidc.id}/configuration", json={"configuration": OIDC_CONFIG})
        assert configured.json()["is_configured"]
        settings = {s["key"]: s["value"] for s in (await client.get(f"/api/admin/plugins/{oidc.id}/settings")).json()}
        assert settings["ClientSecret"] == "********"

        schema = (await client.get(f"/api/admin/plugins/{oidc.id}/schema")).json()["items"]
        assert schema[0]["key"] == "Authority"

        enabled = await client.post(f"/api/admin/plugins/{oidc.id}/enable")
        assert enabled.json()["is_enabled"]
        assert (await client.get(f"/api/admin/plugins/{oidc.id}/health")).json()["status"] == "Healthy"
        assert get_plugin_registry().is_enabled(oidc.plugin_id)

        actions = await client.post(f"/api/admin/plugins/{toc.id}/actions/anything", json={})
        assert actions.status_code == 422

        audit = (await client.get(f"/api/admin/plugins/{oidc.id}/audit")).json()
        operations = {entry["operation"] for entry in audit}
        assert {"Register", "Enable", "Configure", "Validate"} <= operations
        recent = (await client.get("/api/admin/plugins/audit", params={"username": "tester"})).json()
        assert all(entry["username"] == "tester" for entry in recent)
        assert any(entry["operation"] == "ViewList" for entry in recent)

        assert (await client.delete(f"/api/admin/plugins/{toc.id}")).status_code == 204
        assert (await client.get(f"/api/admin/plugins/{toc.id}")).status_code == 404
