import pytest

from squirrel.src.modules import slugs
from squirrel.src.modules.authorization import (
    ANONYMOUS,
    VISIBILITY_INHERIT,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
    Principal,
    can_edit_page,
    can_view_page,
    parse_visibility,
)
from squirrel.src.modules.cache import TTLCache
from squirrel.src.modules.errors import ConfigurationException
from squirrel.src.modules.events import (
    EventPublisher,
    PageCreatedEvent,
    PageEvent,
    PageUpdatedEvent,
)
from squirrel.src.modules.password_hasher import PasswordHasher, password_policy_errors
from squirrel.src.modules.secrets_service import SecretEncryptionService
from squirrel.src.modules.url_tokens import UrlTokenResolver


def test_slug_generation():
    assert slugs.generate("  Hello, World!  ") == "hello-world"
    assert slugs.generate("a  --  b") == "a-b"
    assert slugs.generate("") == ""
    assert slugs.is_valid("hello-world")
    assert not slugs.is_valid("Hello World")


@pytest.mark.asyncio
async def test_unique_slug_appends_counter():
    taken = {"intro", "intro-1"}

    async def exists(candidate):
        return candidate in taken

    assert await slugs.generate_unique("Intro", exists) == "intro-2"
    assert await slugs.generate_unique("!!!", exists) == "page"


def test_cache_expiry_and_patterns():
    cache = TTLCache(default_ttl=60)
    cache.set("page:1", "one")
    cache.set("page:2", "two")
    cache.set("tag:all", ["x"])
    cache.set("short", "gone", ttl=-1)
    assert cache.get("page:1") == "one"
    assert cache.get("short") is None
    assert cache.remove_by_pattern("page:*") == 2
    assert cache.get("page:2") is None
    assert cache.get("tag:all") == ["x"]
    stats = cache.stats()
    assert stats["entries"] == 1
    assert stats["hits"] == 2


@pytest.mark.asyncio
async def test_cache_get_or_create_only_builds_once():
    cache = TTLCache()
    calls = []

    async def factory():
        calls.append(1)
        return "built"

    assert await cache.get_or_create("k", factory) == "built"
    assert await cache.get_or_create("k", factory) == "built"
    assert len(calls) == 1


def test_disabled_cache_stores_nothing():
    cache = TTLCache(enabled=False)
    cache.set("k", "v")
    assert cache.get("k") is None


@pytest.mark.asyncio
async def test_publisher_dispatches_by_event_hierarchy():
    publisher = EventPublisher()
    seen = []

    async def on_any_page(event):
        seen.append(("page", event.page_id))

    async def on_created(event):
        seen.append(("created", event.page_id))

    async def broken(event):
        raise RuntimeError("boom")

    publisher.subscribe(PageEvent, on_any_page)
    publisher.subscribe(PageCreatedEvent, broken)
    publisher.subscribe(PageCreatedEvent, on_created)

    await publisher.publish(PageCreatedEvent(page_id=1, title="A"))
    await publisher.publish(PageUpdatedEvent(page_id=2, title="B"))
    assert seen == [("page", 1), ("created", 1), ("page", 2)]


@pytest.mark.asyncio
async def test_publisher_keeps_registration_order_across_event_types():
    publisher = EventPublisher()
    seen = []

    async def specific(event):
        seen.append("specific")

    async def general(event):
        seen.append("general")

    publisher.subscribe(PageCreatedEvent, specific)
    publisher.subscribe(PageEvent, general)
    publisher.subscribe(PageCreatedEvent, specific)
    await publisher.publish(PageCreatedEvent(page_id=1, title="A"))
    assert seen == ["specific", "general", "specific"]

    publisher.clear()
    await publisher.publish(PageCreatedEvent(page_id=2, title="B"))
    assert len(seen) == 3


def test_password_hashing_round_trip():
    hasher = PasswordHasher(rounds=4)
    hashed = hasher.hash("Secret123!")
    assert hashed != "Secret123!"
    assert hasher.verify("Secret123!", hashed)
    assert not hasher.verify("secret123!", hashed)
    assert not hasher.verify("Secret123!", None)
    assert not hasher.verify("Secret123!", "not-a-hash")


def test_password_policy():
    assert password_policy_errors("Secret123!") == []
    problems = password_policy_errors("short")
    assert any("at least" in p for p in problems)
    assert any("digit" in p for p in problems)
    assert password_policy_errors("") == ["Password is required"]


def test_secret_encryption():
    service = SecretEncryptionService("one-key")
    cipher = service.encrypt("client-secret")
    assert cipher.startswith("ENC:")
    assert service.decrypt(cipher) == "client-secret"
    assert service.encrypt_if_needed(cipher) == cipher
    assert service.decrypt_if_needed("plain") == "plain"
    with pytest.raises(ConfigurationException):
        SecretEncryptionService("other-key").decrypt(cipher)


def test_visibility_parsing():
    assert parse_visibility("public") == VISIBILITY_PUBLIC
    assert parse_visibility("Private") == VISIBILITY_PRIVATE
    assert parse_visibility(0) == VISIBILITY_INHERIT
    assert parse_visibility(None) == VISIBILITY_INHERIT
    with pytest.raises(ValueError):
        parse_visibility("secret")


class _Page:
    def __init__(self, visibility=VISIBILITY_INHERIT, is_locked=False, is_deleted=False):
        self.visibility = visibility
        self.is_locked = is_locked
        self.is_deleted = is_deleted


def test_page_visibility_rules():
    reader = Principal(username="reader")
    assert can_view_page(_Page(VISIBILITY_PUBLIC), ANONYMOUS, False)
    assert not can_view_page(_Page(VISIBILITY_PRIVATE), ANONYMOUS, True)
    assert can_view_page(_Page(VISIBILITY_PRIVATE), reader, False)
    assert can_view_page(_Page(VISIBILITY_INHERIT), ANONYMOUS, True)
    assert not can_view_page(_Page(VISIBILITY_INHERIT), ANONYMOUS, False)
    assert not can_view_page(_Page(is_deleted=True), reader, True)


def test_locked_pages_need_admin_to_edit():
    editor = Principal(username="ed", is_editor=True)
    admin = Principal(username="root", is_admin=True, is_editor=True)
    assert can_edit_page(_Page(), editor)
    assert not can_edit_page(_Page(is_locked=True), editor)
    assert can_edit_page(_Page(is_locked=True), admin)
    assert not can_edit_page(_Page(), ANONYMOUS)


@pytest.mark.asyncio
async def test_url_tokens():
    async def category_lookup(path):
        return 7 if path == "docs/guides" else None

    async def page_lookup(slug):
        return (3, "install") if slug == "install" else None

    resolver = UrlTokenResolver(category_lookup, page_lookup)
    assert await resolver.resolve("%home%") == "/"
    assert await resolver.resolve("%ALLPAGES%") == "/Pages/AllPages"
    assert await resolver.resolve("tag:how to") == "/Pages/AllPages?tag=how%20to"
    assert await resolver.resolve("category:docs:guides") == "/Pages/AllPages?categoryId=7"
    assert await resolver.resolve("category:missing") is None
    assert await resolver.resolve("install") == "/wiki/3/install"
    assert await resolver.resolve("https://example.com") == "https://example.com"
    assert await resolver.resolve("%UNKNOWN%") == "%UNKNOWN%"
    assert await UrlTokenResolver().resolve("category:a:b") == "/Pages/Category?categoryName=b"
