import httpx
import pytest

from squirrel.src.modules.password_hasher import PasswordHasher
from squirrel.src.modules.plugin_loader import get_plugin_registry
from squirrel.src.modules.users_service import UserService
from squirrel.src.plugins.oidc_auth import PLUGIN_ID, OidcAuthenticationPlugin
from tests.conftest import wiki_client
from tests.helpers import OIDC_CONFIG, idp_handler, login


async def _user(session, username="alice", password="Secret123!", **flags):
    users = UserService(session, hasher=PasswordHasher(rounds=4))
    return await users.create_local_user(username, f"{username}@example.com", password, **flags)


async def _enable_oidc(**config):
    plugin = OidcAuthenticationPlugin()
    plugin.set_configuration({**OIDC_CONFIG, **config})
    plugin.transport = httpx.MockTransport(idp_handler)
    await plugin.initialize()
    registry = get_plugin_registry()
    registry.register(plugin)
    registry.set_enabled(PLUGIN_ID, True)
    return plugin


@pytest.mark.asyncio
async def test_login_me_logout(session):
    await _user(session, is_editor=True)
    async with wiki_client(auth_token=None) as client:
        body = await login(client, "alice", "Secret123!")
        assert body["status"] == "success"
        assert body["roles"] == ["Editor"]
        headers = {"Authorization": f"Bearer {body['token']}"}

        me = (await client.get("/auth/me", headers=headers)).json()
        assert me["username"] == "alice"
        assert me["provider"] == "Local"
        assert me["is_editor"]
        assert not me["is_admin"]

        created = await client.post("/api/pages", json={"title": "From Alice"}, headers=headers)
        assert created.status_code == 201

        assert (await client.post("/auth/logout", headers=headers)).json() == {"status": "success"}
        assert (await client.get("/auth/me", headers=headers)).json()["status"] == "error"


@pytest.mark.asyncio
async def test_login_errors(session):
    await _user(session)
    async with wiki_client(auth_token=None) as client:
        assert (await login(client, "", "x"))["message"] == "Missing username or password"
        assert (await login(client, "alice", "wrong"))["message"] == "Login failed"
        assert (await login(client, "ghost", "Secret123!"))["status"] == "error"


@pytest.mark.asyncio
async def test_change_password(session):
    user = await _user(session)
    async with wiki_client(username="alice", is_admin=False, is_editor=False, user_id=user.id) as client:
        resp = await client.post(
            "/auth/password", json={"current_password": "wrong", "new_password": "Changed123!"}
        )
        assert resp.json()["status"] == "error"
        resp = await client.post(
            "/auth/password", json={"current_password": "Secret123!", "new_password": "Changed123!"}
        )
        assert resp.json() == {"status": "success"}
        assert (await login(client, "alice", "Changed123!"))["status"] == "success"

    async with wiki_client(auth_token=None) as anonymous:
        resp = await anonymous.post("/auth/password", json={"current_password": "a", "new_password": "b"})
        assert resp.status_code == 401


@pytest.mark.asyncio
async def test_password_reset_does_not_reveal_accounts():
    async with wiki_client(auth_token=None) as client:
        resp = await client.post("/auth/password-reset", json={"email": "nobody@example.com"})
        assert resp.json()["status"] == "success"
        resp = await client.post("/auth/password-reset/complete", json={"token": "bogus", "new_password": "New123!!x"})
        assert resp.json()["status"] == "error"


@pytest.mark.asyncio
async def test_providers_list_enabled_plugins():
    async with wiki_client(auth_token=None) as client:
        providers = (await client.get("/auth/providers")).json()["providers"]
        assert [p["id"] for p in providers] == ["local"]

        await _enable_oidc(ButtonText="Company SSO")
        providers = (await client.get("/auth/providers")).json()["providers"]
        assert [p["id"] for p in providers] == ["local", PLUGIN_ID]
        assert providers[1]["button_text"] == "Company SSO"


@pytest.mark.asyncio
async def test_external_login_flow():
    await _enable_oidc()
    async with wiki_client(auth_token=None) as client:
        resp = await client.get(
            f"/auth/external/{PLUGIN_ID}/login-url", params={"redirect_uri": "https://wiki.example.com/cb"}
        )
        started = resp.json()
        assert started["url"].startswith("https://idp.example.com/authorize?")
        assert f"state={started['state']}" in started["url"]

        body = (
            await client.post(
                f"/auth/external/{PLUGIN_ID}/callback", json={"code": "good-code", "state": started["state"]}
            )
        ).json()
        assert body["status"] == "success"
        assert body["username"] == "sso.user"
        assert body["roles"] == ["Editor"]

        me = (await client.get("/auth/me", headers={"Authorization": f"Bearer {body['token']}"})).json()
        assert me["provider"] == "OpenIDConnect"
        assert me["is_editor"]

        # a state can only be used once
        replay = await client.post(
            f"/auth/external/{PLUGIN_ID}/callback", json={"code": "good-code", "state": started["state"]}
        )
        assert replay.json()["status"] == "error"


@pytest.mark.asyncio
async def test_external_login_requires_enabled_plugin():
    async with wiki_client(auth_token=None) as client:
        resp = await client.get(f"/auth/external/{PLUGIN_ID}/login-url", params={"redirect_uri": "https://x/cb"})
        assert resp.status_code == 404
