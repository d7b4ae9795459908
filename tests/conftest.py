import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

_TEST_DIR = tempfile.mkdtemp(prefix="squirrel-tests-")

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/squirrel-test.db")
os.environ.setdefault("SQUIRREL_APP_DATA_PATH", os.path.join(_TEST_DIR, "App_Data"))
os.environ.setdefault("SQUIRREL_FILE_STORAGE_PATH", os.path.join(_TEST_DIR, "App_Data", "Files"))
os.environ.setdefault("SQUIRREL_ADMIN_PASSWORD", "Admin123!")
os.environ.setdefault("SQUIRREL_SECRET_KEY", "test-secret-key")
os.environ.setdefault("CORS_ORIGINS", "http://localhost")

from main import app
from squirrel.src.modules.auth_api import PENDING_LOGINS
from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.cache import DEFAULT_TTL_SECONDS, get_cache, get_config_cache
from squirrel.src.modules.event_handlers import register_default_handlers
from squirrel.src.modules.plugin_lifecycle import get_lifecycle_manager
from squirrel.src.modules.plugin_loader import get_plugin_registry
from squirrel.src.modules.wiki_auth import SESSIONS, SessionEntry
from squirrel.src.modules.wiki_db import AsyncSessionLocal, create_all, drop_all, utc_now

# the test transport skips the app lifespan
register_default_handlers()


async def _reset_database():
    await drop_all()
    await create_all()


def _clear_memory():
    get_cache().clear()
    get_cache().configure(enabled=True, default_ttl=DEFAULT_TTL_SECONDS)
    get_config_cache().clear()
    get_plugin_registry().clear()
    get_lifecycle_manager().clear()
    SESSIONS.clear()
    PENDING_LOGINS.clear()


@pytest.fixture(autouse=True)
def clean_state():
    asyncio.run(_reset_database())
    _clear_memory()
    yield
    _clear_memory()


@pytest_asyncio.fixture
async def session():
    async with AsyncSessionLocal() as db:
        yield db


@asynccontextmanager
async def wiki_client(
    auth_token: str | None = "test-token",
    username: str = "tester",
    is_admin: bool = True,
    is_editor: bool = True,
    user_id: str | None = None,
):
    headers: dict[str, str] = {}
    if auth_token:
        SESSIONS[auth_token] = SessionEntry(
            principal=Principal(username=username, user_id=user_id, is_admin=is_admin, is_editor=is_editor),
            display_name=username,
            provider="Local",
            expires_at=utc_now() + timedelta(hours=1),
        )
        headers["Authorization"] = f"Bearer {auth_token}"
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
        yield client
