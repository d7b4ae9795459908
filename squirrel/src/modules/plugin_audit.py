from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.wiki_db import PluginAuditLog, utc_now

logger = logging.getLogger(__name__)


class PluginOperation(str, Enum):
    REGISTER = "Register"
    ENABLE = "Enable"
    DISABLE = "Disable"
    CONFIGURE = "Configure"
    VIEW_CONFIGURATION = "ViewConfiguration"
    DELETE = "Delete"
    RELOAD = "Reload"
    VIEW_DETAILS = "ViewDetails"
    VIEW_LIST = "ViewList"
    VALIDATE = "Validate"


@dataclass
class AuditActor:
    username: str = "system"
    user_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


SYSTEM_ACTOR = AuditActor()


class PluginAuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    def log(
        self,
        *,
        plugin_fk: str | None,
        plugin_identifier: str,
        plugin_name: str,
        operation: PluginOperation,
        actor: AuditActor = SYSTEM_ACTOR,
        changes: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> PluginAuditLog:
        """Stage an audit row; the caller's commit persists it with the change it describes."""
        entry = PluginAuditLog(
            plugin_fk=plugin_fk,
            plugin_identifier=plugin_identifier,
            plugin_name=plugin_name,
            operation=operation.value,
            username=actor.username,
            user_id=actor.user_id,
            changes=changes,
            success=success,
            error_message=error_message,
            ip_address=actor.ip_address,
            user_agent=(actor.user_agent or "")[:500] or None,
            timestamp=utc_now(),
        )
        self.session.add(entry)
        logger.info(
            "Plugin audit: %s %s by %s (success=%s)",
            operation.value,
            plugin_identifier,
            actor.username,
            success,
        )
        return entry

    async def get_by_plugin(self, plugin_fk: str, limit: int = 100) -> list[PluginAuditLog]:
        rows = await self.session.execute(
            select(PluginAuditLog)
            .where(PluginAuditLog.plugin_fk == plugin_fk)
            .order_by(PluginAuditLog.timestamp.desc())
            .limit(limit)
        )
        return list(rows.scalars().all())

    async def get_recent(self, limit: int = 50) -> list[PluginAuditLog]:
        rows = await self.session.execute(
            select(PluginAuditLog).order_by(PluginAuditLog.timestamp.desc()).limit(limit)
        )
        return list(rows.scalars().all())

    async def get_by_user(self, username: str, limit: int = 100) -> list[PluginAuditLog]:
        rows = await self.session.execute(
            select(PluginAuditLog)
            .where(PluginAuditLog.username == username)
            .order_by(PluginAuditLog.timestamp.desc())
            .limit(limit)
        )
        return list(rows.scalars().all())
