import httpx


async def create_page(client, title: str, content: str = "", **fields):
    payload = {"title": title, "content": content, **fields}
    resp = await client.post("/api/pages", json=payload)
    resp.raise_for_status()
    return resp.json()


async def create_category(client, name: str, parent_id: int | None = None):
    resp = await client.post("/api/categories", json={"name": name, "parent_id": parent_id})
    resp.raise_for_status()
    return resp.json()


async def create_folder(client, name: str, parent_id: int | None = None):
    resp = await client.post("/api/folders", json={"name": name, "parent_id": parent_id})
    resp.raise_for_status()
    return resp.json()


async def upload_file(client, file_name: str, data: bytes, content_type: str = "text/plain", **form):
    resp = await client.post(
        "/api/files",
        files={"file": (file_name, data, content_type)},
        data={k: str(v) for k, v in form.items()},
    )
    resp.raise_for_status()
    return resp.json()


async def login(client, username: str, password: str):
    resp = await client.post("/auth/login", json={"username": username, "password": password})
    resp.raise_for_status()
    return resp.json()


AUTHORITY = "https://idp.example.com"
OIDC_CONFIG = {"Authority": AUTHORITY, "ClientId": "wiki", "ClientSecret": "s3cret"}


def idp_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/.well-known/openid-configuration":
        return httpx.Response(
            200,
            json={
                "authorization_endpoint": f"{AUTHORITY}/authorize",
                "token_endpoint": f"{AUTHORITY}/token",
                "userinfo_endpoint": f"{AUTHORITY}/userinfo",
            },
        )
    if path == "/token":
        form = dict(httpx.QueryParams(request.content.decode()))
        if form.get("code") != "good-code" or form.get("client_secret") != "s3cret":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "at-1", "token_type": "Bearer"})
    if path == "/userinfo":
        if request.headers.get("Authorization") != "Bearer at-1":
            return httpx.Response(401)
        return httpx.Response(
            200,
            json={
                "sub": "user-42",
                "preferred_username": "sso.user",
                "email": "sso.user@example.com",
                "name": "Sso User",
                "groups": ["squirrel-editors"],
            },
        )
    return httpx.Response(404)
