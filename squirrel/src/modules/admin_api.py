import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.api_support import audit_actor
from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.errors import BusinessRuleException
from squirrel.src.modules.plugin_audit import PluginAuditService
from squirrel.src.modules.plugin_service import PluginService
from squirrel.src.modules.users_service import UserDto, UserService
from squirrel.src.modules.wiki_auth import require_admin
from squirrel.src.modules.wiki_config import ConfigurationService, get_all_metadata
from squirrel.src.modules.wiki_db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
)


class SettingValuePayload(BaseModel):
    value: Any


class PluginConfigurationPayload(BaseModel):
    configuration: dict[str, str] = {}


class PluginActionPayload(BaseModel):
    parameters: dict[str, Any] = {}


class UserCreatePayload(BaseModel):
    username: str
    email: str
    password: str
    display_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_admin: bool = False
    is_editor: bool = False


class UserUpdatePayload(BaseModel):
    email: str | None = None
    display_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool | None = None


class UserLockPayload(BaseModel):
    minutes: int | None = None


class SettingOut(BaseModel):
    key: str
    display_name: str
    description: str
    category: str
    value: Any
    source: str
    is_secret: bool
    requires_restart: bool
    is_read_only: bool


class PluginOut(BaseModel):
    id: str
    plugin_id: str
    name: str
    version: str
    plugin_type: str
    description: str
    author: str
    is_enabled: bool
    is_configured: bool
    is_core_plugin: bool
    is_loaded: bool
    is_enabled_locked: bool
    load_order: int
    created_at: datetime
    updated_at: datetime


class PluginSettingOut(BaseModel):
    key: str
    value: str | None
    is_secret: bool
    is_from_environment: bool
    environment_variable_name: str | None


class PluginAuditOut(BaseModel):
    id: str
    plugin_identifier: str
    plugin_name: str
    operation: str
    username: str
    changes: str | None
    success: bool
    error_message: str | None
    ip_address: str | None
    timestamp: datetime


class UserOut(BaseModel):
    id: str
    username: str
    email: str
    display_name: str
    first_name: str | None
    last_name: str | None
    is_admin: bool
    is_editor: bool
    is_active: bool
    is_locked: bool
    locked_until: datetime | None
    provider: str
    last_login: datetime | None
    created_on: datetime
    roles: list[str]


def _user_out(user: UserDto) -> UserOut:
    data = asdict(user)
    data.pop("external_id", None)
    return UserOut(**data, roles=user.roles)


def _audit_out(entry) -> PluginAuditOut:
    return PluginAuditOut(
        id=entry.id,
        plugin_identifier=entry.plugin_identifier,
        plugin_name=entry.plugin_name,
        operation=entry.operation,
        username=entry.username,
        changes=entry.changes,
        success=entry.success,
        error_message=entry.error_message,
        ip_address=entry.ip_address,
        timestamp=entry.timestamp,
    )


# settings


@router.get("/settings", response_model=list[SettingOut])
async def list_settings(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return [SettingOut(**asdict(e)) for e in await ConfigurationService(session).get_all_values()]


@router.get("/settings/{key}", response_model=SettingOut)
async def get_setting(key: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    if key not in {m.key for m in get_all_metadata()}:
        raise HTTPException(status_code=404, detail="Unknown setting")
    entries = await ConfigurationService(session).get_all_values()
    return next(SettingOut(**asdict(e)) for e in entries if e.key == key)


@router.put("/settings/{key}", response_model=SettingOut)
async def set_setting(
    key: str,
    payload: SettingValuePayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    config = ConfigurationService(session)
    await config.set_value(key, payload.value, modified_by=principal.username)
    entries = await config.get_all_values()
    return next(SettingOut(**asdict(e)) for e in entries if e.key == key)


@router.post("/settings/invalidate-cache")
async def invalidate_settings_cache(
    key: str | None = Query(default=None),
    _auth: Principal = Depends(require_admin),
):
    ConfigurationService().invalidate_cache(key)
    return {"invalidated": key or "*"}


# plugins


@router.get("/plugins", response_model=list[PluginOut])
async def list_plugins(
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    plugins = await PluginService(session).get_all(actor=audit_actor(request, principal))
    return [PluginOut(**asdict(p)) for p in plugins]


@router.get("/plugins/audit", response_model=list[PluginAuditOut])
async def recent_plugin_audit(
    limit: int = Query(default=50, ge=1, le=500),
    username: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    audit = PluginAuditService(session)
    entries = await audit.get_by_user(username, limit) if username else await audit.get_recent(limit)
    return [_audit_out(e) for e in entries]


@router.get("/plugins/{pk}", response_model=PluginOut)
async def get_plugin(
    pk: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return PluginOut(**asdict(await PluginService(session).get(pk, actor=audit_actor(request, principal))))


@router.get("/plugins/{pk}/settings", response_model=list[PluginSettingOut])
async def plugin_settings(pk: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return [PluginSettingOut(**asdict(s)) for s in await PluginService(session).get_settings(pk)]


@router.get("/plugins/{pk}/schema")
async def plugin_schema(pk: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    service = PluginService(session)
    plugin = service.get_loaded_plugin((await service.get(pk)).plugin_id)
    if plugin is None:
        raise HTTPException(status_code=409, detail="Plugin is not loaded")
    return {"items": [asdict(item) for item in plugin.get_configuration_schema()]}


@router.post("/plugins/{pk}/enable", response_model=PluginOut)
async def enable_plugin(
    pk: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return PluginOut(**asdict(await PluginService(session).enable(pk, actor=audit_actor(request, principal))))


@router.post("/plugins/{pk}/disable", response_model=PluginOut)
async def disable_plugin(
    pk: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return PluginOut(**asdict(await PluginService(session).disable(pk, actor=audit_actor(request, principal))))


@router.put("/plugins/{pk}/configuration", response_model=PluginOut)
async def configure_plugin(
    pk: str,
    payload: PluginConfigurationPayload,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    plugin = await PluginService(session).update_configuration(
        pk, payload.configuration, actor=audit_actor(request, principal)
    )
    return PluginOut(**asdict(plugin))


@router.post("/plugins/{pk}/validate")
async def validate_plugin_configuration(
    pk: str,
    payload: PluginConfigurationPayload,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    service = PluginService(session)
    plugin = await service.get(pk)
    result = await service.validate_configuration(
        plugin.plugin_id, payload.configuration, actor=audit_actor(request, principal)
    )
    return {"is_valid": result.is_valid, "errors": result.errors}


@router.get("/plugins/{pk}/health")
async def plugin_health(pk: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    service = PluginService(session)
    plugin = await service.get(pk)
    return asdict(service.lifecycle.check_health(plugin.plugin_id))


@router.get("/plugins/{pk}/audit", response_model=list[PluginAuditOut])
async def plugin_audit(
    pk: str,
    limit: int = Query(default=100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    await PluginService(session).get(pk)
    return [_audit_out(e) for e in await PluginAuditService(session).get_by_plugin(pk, limit)]


@router.post("/plugins/{pk}/reload", response_model=PluginOut)
async def reload_plugin(
    pk: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    service = PluginService(session)
    plugin = await service.get(pk)
    return PluginOut(**asdict(await service.reload(plugin.plugin_id, actor=audit_actor(request, principal))))


@router.get("/plugins/{pk}/actions")
async def plugin_actions(pk: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    service = PluginService(session)
    loaded = service.get_loaded_plugin((await service.get(pk)).plugin_id)
    return {"actions": [asdict(a) for a in loaded.get_actions()] if loaded else []}


@router.post("/plugins/{pk}/actions/{action_id}")
async def execute_plugin_action(
    pk: str,
    action_id: str,
    payload: PluginActionPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    service = PluginService(session)
    plugin = await service.get(pk)
    loaded = service.get_loaded_plugin(plugin.plugin_id)
    if loaded is None or not plugin.is_enabled:
        raise BusinessRuleException(f"Plugin '{plugin.name}' is not enabled.", "PLUGIN_NOT_ENABLED")
    if action_id not in {a.id for a in loaded.get_actions()}:
        raise HTTPException(status_code=404, detail="Unknown plugin action")
    result = await loaded.execute_action(action_id, payload.parameters)
    logger.info("Plugin action %s/%s by %s: %s", plugin.plugin_id, action_id, principal.username, result.message)
    return asdict(result)


@router.delete("/plugins/{pk}", status_code=204)
async def delete_plugin(
    pk: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    await PluginService(session).delete(pk, actor=audit_actor(request, principal))


# users


@router.get("/users", response_model=list[UserOut])
async def list_users(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return [_user_out(u) for u in await UserService(session).get_all()]


@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(
    payload: UserCreatePayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    user = await UserService(session).create_local_user(**payload.model_dump(), created_by=principal.username)
    return _user_out(user)


@router.get("/users/{user_id}", response_model=UserOut)
async def get_user(user_id: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return _user_out(await UserService(session).get_by_id(user_id))


@router.put("/users/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    payload: UserUpdatePayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    return _user_out(await UserService(session).update(user_id, **payload.model_dump()))


@router.post("/users/{user_id}/roles/{role}", response_model=UserOut)
async def grant_role(
    user_id: str,
    role: str,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    users = UserService(session)
    if role.lower() == "admin":
        return _user_out(await users.promote_to_admin(user_id, assigned_by=principal.username))
    if role.lower() == "editor":
        return _user_out(await users.promote_to_editor(user_id, assigned_by=principal.username))
    raise HTTPException(status_code=404, detail="Unknown role")


@router.delete("/users/{user_id}/roles/{role}", response_model=UserOut)
async def revoke_role(
    user_id: str,
    role: str,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    users = UserService(session)
    if role.lower() == "admin":
        if user_id == principal.user_id:
            raise BusinessRuleException("Administrators cannot demote themselves.", "CANNOT_DEMOTE_SELF")
        return _user_out(await users.demote_from_admin(user_id, assigned_by=principal.username))
    if role.lower() == "editor":
        return _user_out(await users.demote_from_editor(user_id, assigned_by=principal.username))
    raise HTTPException(status_code=404, detail="Unknown role")


@router.post("/users/{user_id}/lock", response_model=UserOut)
async def lock_user(
    user_id: str,
    payload: UserLockPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    return _user_out(await UserService(session).lock_account(user_id, payload.minutes))


@router.post("/users/{user_id}/unlock", response_model=UserOut)
async def unlock_user(user_id: str, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return _user_out(await UserService(session).unlock_account(user_id))


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    if user_id == principal.user_id:
        raise BusinessRuleException("Administrators cannot delete their own account.", "CANNOT_DELETE_SELF")
    await UserService(session).delete(user_id)
