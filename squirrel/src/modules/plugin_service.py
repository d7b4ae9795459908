"""Database-backed plugin management.

Loaded plugin instances live in the process-wide registry; their enabled flag,
settings and audit history live in the database. ``PLUGIN_{ID}_{KEY}``
environment variables configure a plugin at startup and
``PLUGIN_{ID}_ENABLED`` pins its enabled state, where ``{ID}`` is the plugin
id upper-cased with ``.`` and ``-`` turned into ``_``.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.errors import (
    BusinessRuleException,
    ConfigurationException,
    EntityNotFoundException,
    ValidationError,
    ValidationException,
)
from squirrel.src.modules.plugin_audit import (
    SYSTEM_ACTOR,
    AuditActor,
    PluginAuditService,
    PluginOperation,
)
from squirrel.src.modules.plugin_contracts import (
    MarkdownExtensionPlugin,
    PluginBase,
    PluginValidationResult,
)
from squirrel.src.modules.plugin_lifecycle import PluginLifecycleManager, get_lifecycle_manager
from squirrel.src.modules.plugin_loader import PluginRegistry, get_plugin_registry, load_plugins, plugin_type_of
from squirrel.src.modules.secrets_service import SecretEncryptionService, get_secret_service
from squirrel.src.modules.wiki_db import Plugin, PluginSetting, utc_now

logger = logging.getLogger(__name__)

SECRET_MASK = "********"


def env_prefix(plugin_id: str) -> str:
    return f"PLUGIN_{plugin_id.upper().replace('-', '_').replace('.', '_')}_"


def env_enabled_value(plugin_id: str) -> bool | None:
    raw = (os.environ.get(env_prefix(plugin_id) + "ENABLED") or "").strip().lower()
    if raw in {"true", "1"}:
        return True
    if raw in {"false", "0"}:
        return False
    return None


def is_enabled_locked(plugin_id: str) -> bool:
    return bool(os.environ.get(env_prefix(plugin_id) + "ENABLED"))


@dataclass
class PluginDto:
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


@dataclass
class PluginSettingDto:
    key: str
    value: str | None
    is_secret: bool
    is_from_environment: bool
    environment_variable_name: str | None


class PluginService:
    def __init__(
        self,
        session: AsyncSession,
        registry: PluginRegistry | None = None,
        lifecycle: PluginLifecycleManager | None = None,
        secrets: SecretEncryptionService | None = None,
    ):
        self.session = session
        self.registry = registry or get_plugin_registry()
        self.lifecycle = lifecycle or get_lifecycle_manager()
        self.secrets = secrets or get_secret_service()
        self.audit = PluginAuditService(session)

    def _dto(self, row: Plugin) -> PluginDto:
        loaded = self.registry.get(row.plugin_id)
        meta = loaded.metadata if loaded else None
        return PluginDto(
            id=row.id,
            plugin_id=row.plugin_id,
            name=row.name,
            version=row.version,
            plugin_type=row.plugin_type,
            description=meta.description if meta else "",
            author=meta.author if meta else "",
            is_enabled=row.is_enabled,
            is_configured=row.is_configured,
            is_core_plugin=row.is_core_plugin,
            is_loaded=loaded is not None,
            is_enabled_locked=is_enabled_locked(row.plugin_id),
            load_order=row.load_order,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def _get(self, pk: str) -> Plugin:
        row = await self.session.get(Plugin, pk)
        if row is None:
            raise EntityNotFoundException("Plugin", pk)
        return row

    async def _by_plugin_id(self, plugin_id: str) -> Plugin | None:
        rows = await self.session.execute(select(Plugin).where(Plugin.plugin_id == plugin_id))
        return rows.scalars().first()

    async def _settings(self, pk: str) -> list[PluginSetting]:
        rows = await self.session.execute(select(PluginSetting).where(PluginSetting.plugin_fk == pk))
        return list(rows.scalars().all())

    def _log(
        self,
        row: Plugin | None,
        plugin_identifier: str,
        operation: PluginOperation,
        actor: AuditActor,
        changes: dict | str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> None:
        if isinstance(changes, dict):
            changes = json.dumps(changes, default=str)
        self.audit.log(
            plugin_fk=row.id if row else None,
            plugin_identifier=plugin_identifier,
            plugin_name=row.name if row else plugin_identifier,
            operation=operation,
            actor=actor,
            changes=changes,
            success=success,
            error_message=error_message,
        )

    async def _fail(self, row: Plugin, operation: PluginOperation, actor: AuditActor, exc: Exception) -> None:
        self._log(row, row.plugin_id, operation, actor, success=False, error_message=str(exc))
        await self.session.commit()

    # startup

    async def initialize(self, module_paths: Iterable[str] = (), load: bool = True) -> None:
        if load:
            load_plugins(self.registry, module_paths)
        for order, plugin in enumerate(self.registry.all()):
            meta = plugin.metadata
            row = await self._by_plugin_id(meta.id)
            if row is None:
                await self._stage_registration(plugin, order, SYSTEM_ACTOR)
            elif row.version != meta.version:
                logger.info("Plugin %s version changed %s -> %s", meta.id, row.version, meta.version)
                row.version = meta.version
                row.updated_at = utc_now()
        await self.session.flush()
        await self._auto_configure_from_environment()
        await self.session.commit()

        rows = await self.session.execute(select(Plugin).where(Plugin.is_enabled.is_(True)))
        for row in rows.scalars().all():
            plugin = self.registry.get(row.plugin_id)
            if plugin is None:
                logger.warning("Enabled plugin %s is not loaded; skipping", row.plugin_id)
                continue
            if not row.is_configured:
                logger.warning("Enabled plugin %s is not configured; skipping", row.plugin_id)
                continue
            result = await self.lifecycle.initialize(plugin, await self.get_configuration(row.id))
            if result.success:
                self.registry.set_enabled(row.plugin_id, True)
            else:
                logger.error("Plugin %s failed to start: %s", row.plugin_id, result.message)
        logger.info("Plugin service initialized with %d loaded plugin(s)", len(self.registry.all()))

    async def _stage_registration(self, plugin: PluginBase, load_order: int, actor: AuditActor) -> Plugin:
        meta = plugin.metadata
        has_required = any(item.is_required for item in plugin.get_configuration_schema())
        now = utc_now()
        row = Plugin(
            plugin_id=meta.id,
            name=meta.name,
            version=meta.version,
            plugin_type=plugin_type_of(plugin),
            is_enabled=False,
            is_configured=not has_required,
            load_order=load_order,
            is_core_plugin=meta.is_core,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        self._log(row, meta.id, PluginOperation.REGISTER, actor, {"version": meta.version})
        logger.info("Registered plugin %s v%s", meta.id, meta.version)
        return row

    async def _auto_configure_from_environment(self) -> None:
        rows = await self.session.execute(select(Plugin))
        for row in rows.scalars().all():
            plugin = self.registry.get(row.plugin_id)
            if plugin is None:
                continue
            wanted = env_enabled_value(row.plugin_id)
            if wanted is False:
                if row.is_enabled:
                    row.is_enabled = False
                    row.updated_at = utc_now()
                    logger.info("Plugin %s disabled via environment", row.plugin_id)
                continue
            if wanted is not True:
                continue

            prefix = env_prefix(row.plugin_id)
            schema = plugin.get_configuration_schema()
            env_config: dict[str, str] = {}
            env_names: dict[str, str] = {}
            all_required = True
            for item in schema:
                name = prefix + item.key.upper()
                value = os.environ.get(name)
                if value:
                    env_config[item.key] = value
                    env_names[item.key] = name
                elif item.is_required:
                    all_required = False
                    logger.warning("Required environment variable %s not found for plugin %s", name, row.plugin_id)

            if env_config:
                validation = plugin.validate_configuration(env_config)
                if not validation.is_valid:
                    logger.warning(
                        "Environment configuration for plugin %s is invalid: %s", row.plugin_id, validation.errors
                    )
                    continue
                await self.session.execute(delete(PluginSetting).where(PluginSetting.plugin_fk == row.id))
                secret_keys = {item.key for item in schema if item.is_secret}
                for key in env_config:
                    self.session.add(
                        PluginSetting(
                            plugin_fk=row.id,
                            key=key,
                            value=None,
                            is_from_environment=True,
                            environment_variable_name=env_names[key],
                            is_secret=key in secret_keys,
                        )
                    )
                logger.info("Plugin %s configured from environment", row.plugin_id)

            if all_required:
                row.is_configured = True
                row.is_enabled = True
                row.updated_at = utc_now()
                logger.info("Plugin %s auto-enabled via environment", row.plugin_id)
            else:
                logger.warning("Cannot enable plugin %s: missing required configuration", row.plugin_id)

    # queries

    async def get_all(self, actor: AuditActor | None = None) -> list[PluginDto]:
        rows = await self.session.execute(select(Plugin).order_by(Plugin.load_order, Plugin.name))
        plugins = [self._dto(r) for r in rows.scalars().all()]
        if actor is not None:
            self._log(None, "*", PluginOperation.VIEW_LIST, actor)
            await self.session.commit()
        return plugins

    async def get_enabled(self) -> list[PluginDto]:
        rows = await self.session.execute(
            select(Plugin).where(Plugin.is_enabled.is_(True)).order_by(Plugin.load_order, Plugin.name)
        )
        return [self._dto(r) for r in rows.scalars().all()]

    async def get(self, pk: str, actor: AuditActor | None = None) -> PluginDto:
        row = await self._get(pk)
        if actor is not None:
            self._log(row, row.plugin_id, PluginOperation.VIEW_DETAILS, actor)
            await self.session.commit()
        return self._dto(row)

    async def get_by_plugin_id(self, plugin_id: str) -> PluginDto | None:
        row = await self._by_plugin_id(plugin_id)
        return self._dto(row) if row else None

    def get_loaded_plugin(self, plugin_id: str) -> PluginBase | None:
        return self.registry.get(plugin_id)

    def get_enabled_markdown_extensions(self) -> list[MarkdownExtensionPlugin]:
        return self.registry.markdown_extensions()

    async def get_settings(self, pk: str) -> list[PluginSettingDto]:
        await self._get(pk)
        return [
            PluginSettingDto(
                key=s.key,
                value=SECRET_MASK if s.is_secret and s.value else s.value,
                is_secret=s.is_secret,
                is_from_environment=s.is_from_environment,
                environment_variable_name=s.environment_variable_name,
            )
            for s in sorted(await self._settings(pk), key=lambda s: s.key)
        ]

    async def get_configuration(self, pk: str, actor: AuditActor | None = None) -> dict[str, str]:
        """Plain-text configuration: secrets decrypted, env-backed values read from the environment."""
        row = await self._get(pk)
        config: dict[str, str] = {}
        for setting in await self._settings(pk):
            if setting.is_from_environment and setting.environment_variable_name:
                value = os.environ.get(setting.environment_variable_name)
                if value is None:
                    logger.warning(
                        "Environment variable %s for plugin %s setting %s is not set",
                        setting.environment_variable_name,
                        row.plugin_id,
                        setting.key,
                    )
                    value = ""
            else:
                value = setting.value or ""
                if setting.is_secret and value:
                    value = self.secrets.decrypt_if_needed(value)
            config[setting.key] = value
        if actor is not None:
            self._log(row, row.plugin_id, PluginOperation.VIEW_CONFIGURATION, actor)
            await self.session.commit()
        return config

    # commands

    async def register(self, plugin: PluginBase, actor: AuditActor = SYSTEM_ACTOR) -> PluginDto:
        meta = plugin.metadata
        if await self._by_plugin_id(meta.id) is not None:
            raise BusinessRuleException(
                f"Plugin '{meta.id}' is already registered.", "PLUGIN_ALREADY_EXISTS"
            ).with_context("PluginId", meta.id)
        if self.registry.get(meta.id) is None:
            self.registry.register(plugin)
        row = await self._stage_registration(plugin, len(self.registry.all()), actor)
        await self.session.commit()
        return self._dto(row)

    async def enable(self, pk: str, actor: AuditActor = SYSTEM_ACTOR) -> PluginDto:
        row = await self._get(pk)
        try:
            if is_enabled_locked(row.plugin_id):
                raise BusinessRuleException(
                    f"Plugin '{row.name}' enabled state is controlled by the environment.",
                    "PLUGIN_ENABLED_LOCKED",
                ).with_context("PluginId", row.plugin_id)
            if not row.is_configured:
                raise BusinessRuleException(
                    f"Plugin '{row.name}' must be configured before it can be enabled.",
                    "PLUGIN_NOT_CONFIGURED",
                ).with_context("PluginId", row.plugin_id)
            plugin = self.registry.get(row.plugin_id)
            if plugin is None:
                raise ConfigurationException(
                    f"Plugin '{row.name}' is not loaded.", row.plugin_id, "PLUGIN_NOT_LOADED"
                )
            result = await self.lifecycle.initialize(plugin, await self.get_configuration(pk))
            if not result.success:
                raise BusinessRuleException(
                    f"Plugin '{row.name}' failed to initialize: {result.message}",
                    "PLUGIN_INITIALIZATION_FAILED",
                ).with_context("PluginId", row.plugin_id)
        except (BusinessRuleException, ConfigurationException) as exc:
            await self._fail(row, PluginOperation.ENABLE, actor, exc)
            raise

        row.is_enabled = True
        row.updated_at = utc_now()
        self.registry.set_enabled(row.plugin_id, True)
        self._log(row, row.plugin_id, PluginOperation.ENABLE, actor, "Plugin enabled")
        await self.session.commit()
        logger.info("Enabled plugin %s", row.plugin_id)
        return self._dto(row)

    async def disable(self, pk: str, actor: AuditActor = SYSTEM_ACTOR) -> PluginDto:
        row = await self._get(pk)
        if is_enabled_locked(row.plugin_id):
            exc = BusinessRuleException(
                f"Plugin '{row.name}' enabled state is controlled by the environment.",
                "PLUGIN_ENABLED_LOCKED",
            ).with_context("PluginId", row.plugin_id)
            await self._fail(row, PluginOperation.DISABLE, actor, exc)
            raise exc
        plugin = self.registry.get(row.plugin_id)
        if plugin is not None and plugin.is_initialized:
            await self.lifecycle.shutdown(plugin)
        self.registry.set_enabled(row.plugin_id, False)
        row.is_enabled = False
        row.updated_at = utc_now()
        self._log(row, row.plugin_id, PluginOperation.DISABLE, actor, "Plugin disabled")
        await self.session.commit()
        logger.info("Disabled plugin %s", row.plugin_id)
        return self._dto(row)

    async def validate_configuration(
        self, plugin_id: str, configuration: dict[str, str], actor: AuditActor | None = None
    ) -> PluginValidationResult:
        plugin = self.registry.get(plugin_id)
        if plugin is None:
            result = PluginValidationResult()
            result.add_error("plugin", f"Plugin '{plugin_id}' is not loaded")
            return result
        result = plugin.validate_configuration(configuration)
        if actor is not None:
            row = await self._by_plugin_id(plugin_id)
            self._log(
                row,
                plugin_id,
                PluginOperation.VALIDATE,
                actor,
                success=result.is_valid,
                error_message=None if result.is_valid else json.dumps(result.errors),
            )
            await self.session.commit()
        return result

    async def update_configuration(
        self, pk: str, configuration: dict[str, str], actor: AuditActor = SYSTEM_ACTOR
    ) -> PluginDto:
        row = await self._get(pk)
        plugin = self.registry.get(row.plugin_id)
        existing = {s.key: s for s in await self._settings(pk)}
        # a masked secret means "keep the stored value"
        merged = dict(configuration)
        for key, value in configuration.items():
            if value == SECRET_MASK and key in existing:
                stored = existing[key].value or ""
                merged[key] = self.secrets.decrypt_if_needed(stored) if existing[key].is_secret else stored

        if plugin is not None:
            validation = plugin.validate_configuration(merged)
            if not validation.is_valid:
                exc = ValidationException(
                    [ValidationError(field=k, message=m) for k, m in validation.errors.items()]
                )
                await self._fail(row, PluginOperation.CONFIGURE, actor, exc)
                raise exc
        schema = plugin.get_configuration_schema() if plugin else []
        secret_keys = {item.key for item in schema if item.is_secret}

        await self.session.execute(delete(PluginSetting).where(PluginSetting.plugin_fk == pk))
        now = utc_now()
        for key, value in merged.items():
            is_secret = key in secret_keys
            stored = self.secrets.encrypt_if_needed(value) if is_secret and value else value
            self.session.add(
                PluginSetting(
                    plugin_fk=pk,
                    key=key,
                    value=stored,
                    is_secret=is_secret,
                    is_from_environment=False,
                    created_at=now,
                    updated_at=now,
                )
            )
        has_required = any(item.is_required for item in schema)
        row.is_configured = bool(merged) or not has_required
        row.updated_at = now
        self._log(row, row.plugin_id, PluginOperation.CONFIGURE, actor, {"keys": sorted(merged)})
        await self.session.commit()
        logger.info("Updated configuration for plugin %s (%d key(s))", row.plugin_id, len(merged))

        if row.is_enabled and plugin is not None:
            result = await self.lifecycle.restart(plugin, await self.get_configuration(pk))
            if not result.success:
                logger.error("Plugin %s failed to restart after reconfiguration: %s", row.plugin_id, result.message)
        return self._dto(row)

    async def delete(self, pk: str, actor: AuditActor = SYSTEM_ACTOR) -> None:
        row = await self._get(pk)
        if row.is_core_plugin:
            exc = BusinessRuleException(f"Core plugin '{row.name}' cannot be deleted.", "PLUGIN_IS_CORE")
            await self._fail(row, PluginOperation.DELETE, actor, exc)
            raise exc
        plugin = self.registry.get(row.plugin_id)
        if plugin is not None and plugin.is_initialized:
            await self.lifecycle.shutdown(plugin)
        self.registry.set_enabled(row.plugin_id, False)
        self.lifecycle.forget(row.plugin_id)
        self._log(row, row.plugin_id, PluginOperation.DELETE, actor, {"version": row.version})
        await self.session.flush()
        await self.session.execute(delete(PluginSetting).where(PluginSetting.plugin_fk == pk))
        await self.session.delete(row)
        await self.session.commit()
        logger.info("Deleted plugin %s", row.plugin_id)

    async def reload(self, plugin_id: str, actor: AuditActor = SYSTEM_ACTOR) -> PluginDto:
        row = await self._by_plugin_id(plugin_id)
        plugin = self.registry.get(plugin_id)
        if row is None:
            raise EntityNotFoundException("Plugin", plugin_id)
        if plugin is None:
            exc = ConfigurationException(f"Failed to reload plugin '{plugin_id}'.", plugin_id, "PLUGIN_RELOAD_FAILED")
            await self._fail(row, PluginOperation.RELOAD, actor, exc)
            raise exc
        if row.is_enabled:
            result = await self.lifecycle.restart(plugin, await self.get_configuration(row.id))
            if not result.success:
                exc = ConfigurationException(
                    f"Failed to reload plugin '{plugin_id}': {result.message}", plugin_id, "PLUGIN_RELOAD_FAILED"
                )
                await self._fail(row, PluginOperation.RELOAD, actor, exc)
                raise exc
        if row.version != plugin.metadata.version:
            row.version = plugin.metadata.version
            row.updated_at = utc_now()
        self._log(row, plugin_id, PluginOperation.RELOAD, actor, {"version": row.version})
        await self.session.commit()
        logger.info("Reloaded plugin %s", plugin_id)
        return self._dto(row)

    async def shutdown_all(self) -> None:
        for plugin in self.registry.all():
            if plugin.is_initialized:
                await self.lifecycle.shutdown(plugin)
