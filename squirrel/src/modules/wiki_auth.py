from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request

from squirrel.src.modules.authorization import ANONYMOUS, Principal
from squirrel.src.modules.users_service import UserDto
from squirrel.src.modules.wiki_db import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SESSION_MINUTES = 480


@dataclass
class SessionEntry:
    principal: Principal
    display_name: str
    provider: str
    expires_at: datetime


# token -> session; role changes apply on next login
SESSIONS: dict[str, SessionEntry] = {}


def make_token() -> str:
    return secrets.token_hex(16)


def get_auth_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


def principal_for(user: UserDto) -> Principal:
    return Principal(
        username=user.username,
        user_id=user.id,
        is_admin=user.is_admin,
        is_editor=user.is_editor or user.is_admin,
    )


def create_session(user: UserDto, timeout_minutes: int = DEFAULT_SESSION_MINUTES) -> str:
    token = make_token()
    SESSIONS[token] = SessionEntry(
        principal=principal_for(user),
        display_name=user.display_name,
        provider=user.provider,
        expires_at=utc_now() + timedelta(minutes=timeout_minutes),
    )
    logger.info("Session opened for %s (%s)", user.username, user.provider)
    return token


def end_session(token: str | None) -> bool:
    if token and token in SESSIONS:
        entry = SESSIONS.pop(token)
        logger.info("Session closed for %s", entry.principal.username)
        return True
    return False


def get_session_entry(token: str | None) -> SessionEntry | None:
    if not token:
        return None
    entry = SESSIONS.get(token)
    if entry is None:
        return None
    if entry.expires_at <= utc_now():
        SESSIONS.pop(token, None)
        logger.info("Session expired for %s", entry.principal.username)
        return None
    return entry


def purge_expired_sessions() -> int:
    now = utc_now()
    stale = [token for token, entry in SESSIONS.items() if entry.expires_at <= now]
    for token in stale:
        SESSIONS.pop(token, None)
    return len(stale)


def get_current_user(request: Request) -> Principal:
    entry = get_session_entry(get_auth_token(request))
    return entry.principal if entry else ANONYMOUS


def require_authenticated(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def require_editor(principal: Principal = Depends(require_authenticated)) -> Principal:
    if not (principal.is_editor or principal.is_admin):
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal


def require_admin(principal: Principal = Depends(require_authenticated)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal
