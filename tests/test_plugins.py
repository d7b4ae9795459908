from dataclasses import replace

import httpx
import pytest
from sqlalchemy import select

from squirrel.src.modules.errors import BusinessRuleException, ExternalServiceException, ValidationException
from squirrel.src.modules.plugin_audit import AuditActor, PluginAuditService, PluginOperation
from squirrel.src.modules.plugin_contracts import AuthenticationRequest
from squirrel.src.modules.plugin_lifecycle import HEALTHY, UNHEALTHY, get_lifecycle_manager
from squirrel.src.modules.plugin_loader import PluginRegistry, get_plugin_registry, load_plugins_from_module
from squirrel.src.modules.plugin_service import SECRET_MASK, PluginService, env_prefix
from squirrel.src.modules.wiki_db import PluginSetting
from squirrel.src.plugins import oidc_auth
from squirrel.src.plugins.oidc_auth import OidcAuthenticationPlugin, OidcAuthenticationStrategy
from squirrel.src.plugins.table_of_contents import TableOfContentsPlugin
from tests.helpers import AUTHORITY, OIDC_CONFIG, idp_handler


def test_env_prefix():
    assert env_prefix("squirrel.wiki.plugins.oidc") == "PLUGIN_SQUIRREL_WIKI_PLUGINS_OIDC_"
    assert env_prefix("my-plugin") == "PLUGIN_MY_PLUGIN_"


def test_loader_reads_module_factories():
    registry = PluginRegistry()
    assert load_plugins_from_module("squirrel.src.plugins.oidc_auth", registry) == 1
    assert load_plugins_from_module("squirrel.src.plugins.does_not_exist", registry) == 0
    assert isinstance(registry.get(oidc_auth.PLUGIN_ID), OidcAuthenticationPlugin)


@pytest.mark.asyncio
async def test_register_configure_enable_disable(session):
    service = PluginService(session)
    admin = AuditActor(username="root", user_id="u-1")
    dto = await service.register(OidcAuthenticationPlugin(), actor=admin)
    assert dto.plugin_type == "Authentication"
    assert not dto.is_configured
    assert dto.is_loaded

    with pytest.raises(BusinessRuleException) as err:
        await service.register(OidcAuthenticationPlugin())
    assert err.value.rule_code == "PLUGIN_ALREADY_EXISTS"

    with pytest.raises(BusinessRuleException) as err:
        await service.enable(dto.id, actor=admin)
    assert err.value.rule_code == "PLUGIN_NOT_CONFIGURED"

    with pytest.raises(ValidationException):
        await service.update_configuration(dto.id, {**OIDC_CONFIG, "Authority": "not a url"}, actor=admin)

    configured = await service.update_configuration(dto.id, OIDC_CONFIG, actor=admin)
    assert configured.is_configured

    settings = {s.key: s for s in await service.get_settings(dto.id)}
    assert settings["ClientSecret"].value == SECRET_MASK
    assert settings["ClientSecret"].is_secret
    assert settings["ClientId"].value == "wiki"
    stored = await session.execute(select(PluginSetting).where(PluginSetting.key == "ClientSecret"))
    assert stored.scalars().one().value.startswith("ENC:")

    # the masked placeholder keeps the stored secret
    await service.update_configuration(dto.id, {**OIDC_CONFIG, "ClientSecret": SECRET_MASK}, actor=admin)
    assert (await service.get_configuration(dto.id))["ClientSecret"] == "s3cret"

    enabled = await service.enable(dto.id, actor=admin)
    assert enabled.is_enabled
    assert get_plugin_registry().is_enabled(oidc_auth.PLUGIN_ID)
    assert get_lifecycle_manager().check_health(oidc_auth.PLUGIN_ID).status == HEALTHY
    assert [p.plugin_id for p in await service.get_enabled()] == [oidc_auth.PLUGIN_ID]

    disabled = await service.disable(dto.id, actor=admin)
    assert not disabled.is_enabled
    assert get_lifecycle_manager().check_health(oidc_auth.PLUGIN_ID).status == UNHEALTHY

    audit = PluginAuditService(session)
    entries = await audit.get_by_plugin(dto.id)
    operations = {(e.operation, e.success) for e in entries}
    assert (PluginOperation.REGISTER.value, True) in operations
    assert (PluginOperation.ENABLE.value, False) in operations
    assert (PluginOperation.CONFIGURE.value, False) in operations
    assert (PluginOperation.ENABLE.value, True) in operations
    assert (PluginOperation.DISABLE.value, True) in operations
    assert all(e.username == "root" for e in await audit.get_by_user("root"))


@pytest.mark.asyncio
async def test_plugins_without_required_settings_start_configured(session):
    service = PluginService(session)
    dto = await service.register(TableOfContentsPlugin())
    assert dto.is_configured
    await service.enable(dto.id)
    assert [p.metadata.id for p in service.get_enabled_markdown_extensions()] == [dto.plugin_id]

    reloaded = await service.reload(dto.plugin_id)
    assert reloaded.is_enabled
    assert get_lifecycle_manager().get_state(dto.plugin_id).restart_count == 1


class CorePlugin(TableOfContentsPlugin):
    _metadata = replace(TableOfContentsPlugin._metadata, id="squirrel.wiki.plugins.core-test", is_core=True)


@pytest.mark.asyncio
async def test_delete_plugin(session):
    service = PluginService(session)
    core = await service.register(CorePlugin())
    with pytest.raises(BusinessRuleException) as err:
        await service.delete(core.id)
    assert err.value.rule_code == "PLUGIN_IS_CORE"

    dto = await service.register(TableOfContentsPlugin())
    await service.delete(dto.id)
    assert await service.get_by_plugin_id(dto.plugin_id) is None
    assert not get_plugin_registry().is_enabled(dto.plugin_id)


@pytest.mark.asyncio
async def test_environment_configures_and_locks_plugins(session, monkeypatch):
    prefix = env_prefix(oidc_auth.PLUGIN_ID)
    monkeypatch.setenv(prefix + "ENABLED", "true")
    monkeypatch.setenv(prefix + "AUTHORITY", AUTHORITY)
    monkeypatch.setenv(prefix + "CLIENTID", "env-client")
    monkeypatch.setenv(prefix + "CLIENTSECRET", "env-secret")

    service = PluginService(session)
    await service.initialize()
    dto = await service.get_by_plugin_id(oidc_auth.PLUGIN_ID)
    assert dto.is_enabled
    assert dto.is_enabled_locked
    assert get_plugin_registry().is_enabled(oidc_auth.PLUGIN_ID)

    config = await service.get_configuration(dto.id)
    assert config["ClientId"] == "env-client"
    assert config["ClientSecret"] == "env-secret"
    settings = {s.key: s for s in await service.get_settings(dto.id)}
    assert settings["ClientId"].is_from_environment
    assert settings["ClientId"].environment_variable_name == prefix + "CLIENTID"

    with pytest.raises(BusinessRuleException) as err:
        await service.disable(dto.id)
    assert err.value.rule_code == "PLUGIN_ENABLED_LOCKED"

    toc = await service.get_by_plugin_id("squirrel.wiki.plugins.markdown.tableofcontents")
    assert toc.is_configured
    assert not toc.is_enabled


@pytest.mark.asyncio
async def test_oidc_login_url_and_authentication():
    strategy = OidcAuthenticationStrategy(OIDC_CONFIG, transport=httpx.MockTransport(idp_handler))
    url = await strategy.get_login_url("https://wiki.example.com/callback", "state-1")
    assert url.startswith(f"{AUTHORITY}/authorize?")
    assert "client_id=wiki" in url
    assert "state=state-1" in url
    assert "scope=openid+profile+email" in url

    result = await strategy.authenticate(
        AuthenticationRequest(code="good-code", redirect_uri="https://wiki.example.com/callback")
    )
    assert result.success
    assert result.username == "sso.user"
    assert result.external_id == "user-42"
    assert result.provider == oidc_auth.PROVIDER
    assert result.claims["groups"] == ["squirrel-editors"]

    missing = await strategy.authenticate(AuthenticationRequest())
    assert not missing.success

    with pytest.raises(ExternalServiceException):
        await strategy.authenticate(AuthenticationRequest(code="bad-code"))


@pytest.mark.asyncio
async def test_oidc_discovery_failure_is_reported():
    strategy = OidcAuthenticationStrategy(
        {"Authority": "https://down.example.com"},
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(ExternalServiceException) as err:
        await strategy.get_login_url("https://wiki.example.com/callback", "s")
    assert err.value.endpoint == "https://down.example.com/.well-known/openid-configuration"


def test_oidc_group_mapping():
    plugin = OidcAuthenticationPlugin()
    plugin.set_configuration(OIDC_CONFIG)
    assert plugin.role_flags(["squirrel-admins"]) == {"is_admin": True, "is_editor": True}
    assert plugin.role_flags(["squirrel-editors"]) == {"is_admin": False, "is_editor": True}
    assert plugin.role_flags(["others"]) == {"is_admin": False, "is_editor": False}
    assert plugin.login_button_text == "Sign in with SSO"
    assert plugin.validate_configuration({"Authority": AUTHORITY}).errors.keys() == {"ClientId", "ClientSecret"}
