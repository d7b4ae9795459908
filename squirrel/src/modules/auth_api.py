import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.errors import BusinessRuleException
from squirrel.src.modules.plugin_contracts import AuthenticationPlugin, AuthenticationRequest
from squirrel.src.modules.plugin_loader import get_plugin_registry
from squirrel.src.modules.users_service import UserService
from squirrel.src.modules.wiki_auth import (
    create_session,
    end_session,
    get_auth_token,
    get_session_entry,
    require_authenticated,
)
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import get_session, utc_now

logger = logging.getLogger(__name__)

LOGIN_STATE_LIFETIME = timedelta(minutes=10)

router = APIRouter(
    prefix="/auth",
    tags=["auth"],
)


@dataclass
class PendingLogin:
    plugin_id: str
    redirect_uri: str
    expires_at: datetime


# state -> pending external login
PENDING_LOGINS: dict[str, PendingLogin] = {}


class LoginPayload(BaseModel):
    username: str = ""
    password: str = ""


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str


class ResetRequestPayload(BaseModel):
    email: str


class ResetCompletePayload(BaseModel):
    token: str
    new_password: str


class ExternalCallbackPayload(BaseModel):
    code: str | None = None
    state: str


def _auth_plugin(plugin_id: str) -> AuthenticationPlugin:
    registry = get_plugin_registry()
    plugin = registry.get(plugin_id)
    if not isinstance(plugin, AuthenticationPlugin) or not registry.is_enabled(plugin_id):
        raise HTTPException(status_code=404, detail="Authentication provider not available")
    return plugin


async def _open_session(session: AsyncSession, user) -> dict:
    minutes = await ConfigurationService(session).get_value("SQUIRREL_SESSION_TIMEOUT_MINUTES")
    token = create_session(user, minutes)
    return {
        "status": "success",
        "token": token,
        "username": user.username,
        "display_name": user.display_name,
        "roles": user.roles,
    }


@router.post("/login")
async def auth_login(payload: LoginPayload, session: AsyncSession = Depends(get_session)):
    username = payload.username.strip()
    if not username or not payload.password:
        return {"status": "error", "message": "Missing username or password"}
    try:
        user = await UserService(session).authenticate(username, payload.password)
    except BusinessRuleException as exc:
        logger.info("Login refused for user=%s: %s", username, exc.rule_code)
        return {"status": "error", "message": exc.get_user_message()}
    if user is None:
        logger.info("Login failed for user=%s", username)
        return {"status": "error", "message": "Login failed"}
    logger.info("Login ok: %s", user.username)
    return await _open_session(session, user)


@router.get("/me")
async def auth_me(request: Request):
    entry = get_session_entry(get_auth_token(request))
    if entry is None:
        return {"status": "error", "message": "Not authenticated"}
    principal = entry.principal
    return {
        "status": "success",
        "username": principal.username,
        "user_id": principal.user_id,
        "display_name": entry.display_name,
        "provider": entry.provider,
        "is_admin": principal.is_admin,
        "is_editor": principal.is_editor,
        "expires_at": entry.expires_at,
    }


@router.post("/logout")
async def auth_logout(request: Request):
    end_session(get_auth_token(request))
    return {"status": "success"}


@router.post("/password")
async def change_password(
    payload: ChangePasswordPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_authenticated),
):
    changed = await UserService(session).change_password(
        principal.user_id, payload.current_password, payload.new_password
    )
    if not changed:
        return {"status": "error", "message": "Current password is incorrect"}
    return {"status": "success"}


@router.post("/password-reset")
async def request_password_reset(payload: ResetRequestPayload, session: AsyncSession = Depends(get_session)):
    token = await UserService(session).initiate_password_reset(payload.email)
    if token:
        # mail delivery is not wired up
        logger.debug("Password reset token issued for %s: %s", payload.email, token)
    return {"status": "success", "message": "If the address is registered, a reset link has been sent."}


@router.post("/password-reset/complete")
async def complete_password_reset(payload: ResetCompletePayload, session: AsyncSession = Depends(get_session)):
    if not await UserService(session).complete_password_reset(payload.token, payload.new_password):
        return {"status": "error", "message": "Reset token is invalid or has expired"}
    return {"status": "success"}


@router.get("/providers")
async def auth_providers():
    providers = [{"id": "local", "name": "Local", "button_text": "Sign in", "icon": "bi-person"}]
    for plugin in get_plugin_registry().enabled_of_type(AuthenticationPlugin):
        providers.append(
            {
                "id": plugin.metadata.id,
                "name": plugin.metadata.name,
                "button_text": plugin.login_button_text,
                "icon": plugin.login_button_icon,
            }
        )
    return {"providers": providers}


@router.get("/external/{plugin_id}/login-url")
async def external_login_url(plugin_id: str, redirect_uri: str = Query(..., min_length=1)):
    plugin = _auth_plugin(plugin_id)
    now = utc_now()
    for state, pending in list(PENDING_LOGINS.items()):
        if pending.expires_at <= now:
            PENDING_LOGINS.pop(state, None)
    state = secrets.token_urlsafe(24)
    url = await plugin.create_strategy(plugin.configuration).get_login_url(redirect_uri, state)
    PENDING_LOGINS[state] = PendingLogin(plugin_id, redirect_uri, now + LOGIN_STATE_LIFETIME)
    return {"status": "success", "url": url, "state": state}


@router.post("/external/{plugin_id}/callback")
async def external_callback(
    plugin_id: str,
    payload: ExternalCallbackPayload,
    session: AsyncSession = Depends(get_session),
):
    plugin = _auth_plugin(plugin_id)
    pending = PENDING_LOGINS.pop(payload.state, None)
    if pending is None or pending.plugin_id != plugin_id or pending.expires_at <= utc_now():
        return {"status": "error", "message": "Login request expired or is invalid"}

    strategy = plugin.create_strategy(plugin.configuration)
    result = await strategy.authenticate(
        AuthenticationRequest(code=payload.code, redirect_uri=pending.redirect_uri, state=payload.state)
    )
    if not result.success:
        logger.info("External login failed via %s: %s", plugin_id, result.error_message)
        return {"status": "error", "message": result.error_message or "Login failed"}

    users = UserService(session)
    user = await users.get_or_create_external(
        result.provider, result.external_id, result.username, result.email or "", result.display_name
    )
    role_flags = getattr(plugin, "role_flags", None)
    if role_flags is not None:
        flags = role_flags(result.claims.get("groups", []))
        if flags["is_admin"] != user.is_admin:
            change = users.promote_to_admin if flags["is_admin"] else users.demote_from_admin
            user = await change(user.id, assigned_by=result.provider)
        if flags["is_editor"] != user.is_editor:
            change = users.promote_to_editor if flags["is_editor"] else users.demote_from_editor
            user = await change(user.id, assigned_by=result.provider)
    if not user.is_active:
        return {"status": "error", "message": "Account is inactive"}
    logger.info("External login ok: %s via %s", user.username, plugin_id)
    return await _open_session(session, user)
