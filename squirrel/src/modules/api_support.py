from __future__ import annotations

from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal, parse_visibility
from squirrel.src.modules.errors import AuthenticationRequiredException, ValidationException
from squirrel.src.modules.plugin_audit import AuditActor
from squirrel.src.modules.wiki_config import ConfigurationService


async def allow_anonymous_reading(session: AsyncSession) -> bool:
    return bool(await ConfigurationService(session).get_value("SQUIRREL_ALLOW_ANONYMOUS_READING"))


def visibility_value(raw: Any) -> int:
    try:
        return parse_visibility(raw)
    except ValueError as exc:
        raise ValidationException(str(exc), field="visibility") from exc


def require_reader(principal: Principal, visible: bool) -> None:
    """Hidden content asks anonymous callers to sign in; deleted content stays a 404 upstream."""
    if not visible and not principal.is_authenticated:
        raise AuthenticationRequiredException("Sign in to view this content")


def audit_actor(request: Request, principal: Principal) -> AuditActor:
    return AuditActor(
        username=principal.username or "anonymous",
        user_id=principal.user_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
