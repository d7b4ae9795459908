import pytest

from squirrel.src.modules.admin_bootstrap import ensure_admin_exists, seed_default_content
from squirrel.src.modules.cache import get_cache
from squirrel.src.modules.errors import BusinessRuleException, ConfigurationException, ValidationException
from squirrel.src.modules.pages_service import PageService
from squirrel.src.modules.password_hasher import PasswordHasher
from squirrel.src.modules.users_service import UserService
from squirrel.src.modules.wiki_config import (
    SOURCE_DATABASE,
    SOURCE_DEFAULT,
    SOURCE_ENVIRONMENT,
    ConfigurationService,
    DatabaseConfigurationProvider,
    get_metadata,
    validate_wiki_environment,
)


def _users(session):
    return UserService(session, hasher=PasswordHasher(rounds=4))


@pytest.mark.asyncio
async def test_create_local_user_and_roles(session):
    users = _users(session)
    admin = await users.create_local_user("alice", "alice@example.com", "Secret123!", is_admin=True)
    assert admin.is_editor
    assert admin.roles == ["Admin", "Editor"]
    assert await users.get_roles(admin.id) == ["Admin", "Editor", "Viewer"]

    with pytest.raises(BusinessRuleException):
        await users.create_local_user("ALICE", "other@example.com", "Secret123!")
    with pytest.raises(BusinessRuleException):
        await users.create_local_user("bob", "Alice@Example.com", "Secret123!")
    with pytest.raises(ValidationException):
        await users.create_local_user("carol", "carol@example.com", "weak")


@pytest.mark.asyncio
async def test_authenticate_by_username_or_email(session):
    users = _users(session)
    await users.create_local_user("dave", "dave@example.com", "Secret123!")
    assert (await users.authenticate("DAVE", "Secret123!")).username == "dave"
    assert (await users.authenticate("dave@example.com", "Secret123!")).last_login is not None
    assert await users.authenticate("dave", "wrong") is None
    assert await users.authenticate("nobody", "Secret123!") is None


@pytest.mark.asyncio
async def test_repeated_failures_lock_the_account(session):
    users = _users(session)
    user = await users.create_local_user("erin", "erin@example.com", "Secret123!")
    for _ in range(4):
        assert await users.authenticate("erin", "nope") is None
    with pytest.raises(BusinessRuleException) as err:
        await users.authenticate("erin", "nope")
    assert err.value.rule_code == "ACCOUNT_LOCKED"
    with pytest.raises(BusinessRuleException):
        await users.authenticate("erin", "Secret123!")

    await users.unlock_account(user.id)
    assert await users.authenticate("erin", "Secret123!") is not None


@pytest.mark.asyncio
async def test_password_change_and_reset(session):
    users = _users(session)
    user = await users.create_local_user("fay", "fay@example.com", "Secret123!")
    assert not await users.change_password(user.id, "wrong", "Another123!")
    assert await users.change_password(user.id, "Secret123!", "Another123!")
    assert await users.authenticate("fay", "Another123!") is not None

    assert await users.initiate_password_reset("unknown@example.com") == ""
    token = await users.initiate_password_reset("FAY@example.com")
    assert token
    assert await users.complete_password_reset(token, "Third123!")
    assert not await users.complete_password_reset(token, "Fourth123!")
    assert await users.authenticate("fay", "Third123!") is not None


@pytest.mark.asyncio
async def test_external_users_get_unique_usernames(session):
    users = _users(session)
    await users.create_local_user("gus", "gus@example.com", "Secret123!")
    external = await users.get_or_create_external("OpenIDConnect", "sub-1", "gus", "gus@sso.example.com", "Gus")
    assert external.username == "gus1"
    assert external.provider == "OpenIDConnect"
    again = await users.get_or_create_external("OpenIDConnect", "sub-1", "gus", "gus@sso.example.com", "Gus S")
    assert again.id == external.id
    assert again.display_name == "Gus S"
    assert await users.authenticate("gus1", "anything") is None


@pytest.mark.asyncio
async def test_role_changes(session):
    users = _users(session)
    user = await users.create_local_user("hal", "hal@example.com", "Secret123!")
    promoted = await users.promote_to_admin(user.id, assigned_by="root")
    assert promoted.is_admin and promoted.is_editor
    demoted = await users.demote_from_admin(user.id)
    assert not demoted.is_admin
    assert demoted.is_editor
    assert await users.get_roles(user.id) == ["Editor", "Viewer"]


@pytest.mark.asyncio
async def test_ensure_admin_exists_and_seed(session):
    config = ConfigurationService(session)
    created = await ensure_admin_exists(session, config)
    assert created is not None
    assert created.is_admin
    assert await ensure_admin_exists(session, config) is None

    assert await seed_default_content(session)
    assert not await seed_default_content(session)
    home = await PageService(session).get_home_page()
    assert home.slug == "home"


@pytest.mark.asyncio
async def test_configuration_sources(session, monkeypatch):
    config = ConfigurationService(session)
    assert await config.get_value("SQUIRREL_MAX_LOGIN_ATTEMPTS") == 5
    assert await config.get_source("SQUIRREL_MAX_LOGIN_ATTEMPTS") == SOURCE_DEFAULT

    await config.set_value("SQUIRREL_MAX_LOGIN_ATTEMPTS", 7, modified_by="root")
    assert await config.get_value("SQUIRREL_MAX_LOGIN_ATTEMPTS") == 7
    assert await config.get_source("SQUIRREL_MAX_LOGIN_ATTEMPTS") == SOURCE_DATABASE

    monkeypatch.setenv("SQUIRREL_MAX_LOGIN_ATTEMPTS", "9")
    config.invalidate_cache()
    assert await config.get_value("SQUIRREL_MAX_LOGIN_ATTEMPTS") == 9
    assert await config.is_from_environment("SQUIRREL_MAX_LOGIN_ATTEMPTS")
    assert await config.get_source("SQUIRREL_MAX_LOGIN_ATTEMPTS") == SOURCE_ENVIRONMENT
    with pytest.raises(ConfigurationException) as err:
        await config.set_value("SQUIRREL_MAX_LOGIN_ATTEMPTS", 3)
    assert err.value.error_code == "CONFIGURATION_READ_ONLY"


@pytest.mark.asyncio
async def test_configuration_validation(session):
    config = ConfigurationService(session)
    assert config.validate("SQUIRREL_MAX_LOGIN_ATTEMPTS", "abc")
    with pytest.raises(ValidationException):
        await config.set_value("SQUIRREL_MAX_LOGIN_ATTEMPTS", "abc")
    with pytest.raises(ConfigurationException):
        get_metadata("NOT_A_SETTING")

    entries = {entry.key: entry for entry in await config.get_all_values()}
    assert entries["SQUIRREL_ADMIN_PASSWORD"].is_secret


def test_environment_validation_flags_bad_extensions(monkeypatch):
    monkeypatch.setenv("SQUIRREL_FILE_ALLOWED_EXTENSIONS", "pdf,.png")
    result = validate_wiki_environment()
    assert any("'pdf'" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_database_provider_without_session_refuses_writes():
    with pytest.raises(ConfigurationException):
        await DatabaseConfigurationProvider(None).set_value("SQUIRREL_SITE_NAME", "Nuts", "root")


@pytest.mark.asyncio
async def test_caching_switch_follows_configuration(session):
    pages = PageService(session)
    page = await pages.create("Cached Page", "text")
    config = ConfigurationService(session)
    cache = get_cache()

    await config.set_value("SQUIRREL_CACHE_DURATION_MINUTES", 5)
    assert cache.default_ttl == 300
    await pages.get_by_id(page.id)
    assert cache.stats()["entries"] > 0

    await config.set_value("SQUIRREL_ENABLE_CACHING", False)
    assert not cache.stats()["enabled"]
    assert cache.stats()["entries"] == 0
    await pages.get_by_id(page.id)
    assert cache.stats()["entries"] == 0

    await config.set_value("SQUIRREL_ENABLE_CACHING", True)
    await pages.get_by_id(page.id)
    assert cache.stats()["entries"] > 0


@pytest.mark.asyncio
async def test_caching_disabled_from_environment(session, monkeypatch):
    monkeypatch.setenv("SQUIRREL_ENABLE_CACHING", "false")
    cache = await ConfigurationService(session).apply_cache_settings()
    assert cache is get_cache()

    pages = PageService(session)
    page = await pages.create("Uncached", "text")
    await pages.get_by_id(page.id)
    assert cache.stats() == {"enabled": False, "entries": 0, "hits": 0, "misses": 0}
