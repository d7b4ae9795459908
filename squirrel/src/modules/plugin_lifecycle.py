from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import lru_cache

from squirrel.src.modules.plugin_contracts import PluginActionResult, PluginBase
from squirrel.src.modules.wiki_db import utc_now

logger = logging.getLogger(__name__)

DEGRADED_WINDOW = timedelta(minutes=5)

HEALTHY = "Healthy"
DEGRADED = "Degraded"
UNHEALTHY = "Unhealthy"


@dataclass
class PluginState:
    plugin_id: str
    is_initialized: bool = False
    last_initialized: datetime | None = None
    initialization_ms: float | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    restart_count: int = 0


@dataclass
class PluginHealth:
    plugin_id: str
    status: str
    message: str
    checked_at: datetime = field(default_factory=utc_now)


class PluginLifecycleManager:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, PluginState] = {}

    def _state(self, plugin_id: str) -> PluginState:
        with self._lock:
            return self._states.setdefault(plugin_id, PluginState(plugin_id=plugin_id))

    async def initialize(self, plugin: PluginBase, configuration: dict[str, str]) -> PluginActionResult:
        plugin_id = plugin.metadata.id
        state = self._state(plugin_id)
        started = time.perf_counter()
        try:
            plugin.set_configuration(configuration)
            await plugin.initialize()
        except Exception as exc:
            logger.exception("Plugin %s failed to initialize", plugin_id)
            with self._lock:
                state.is_initialized = False
                state.last_error = str(exc)
                state.last_error_at = utc_now()
            return PluginActionResult.failed(f"Initialization failed: {exc}", plugin_id=plugin_id)
        elapsed = (time.perf_counter() - started) * 1000
        with self._lock:
            state.is_initialized = True
            state.last_initialized = utc_now()
            state.initialization_ms = elapsed
        logger.info("Plugin %s initialized in %.1f ms", plugin_id, elapsed)
        return PluginActionResult.successful("Plugin initialized", plugin_id=plugin_id)

    async def shutdown(self, plugin: PluginBase) -> PluginActionResult:
        plugin_id = plugin.metadata.id
        state = self._state(plugin_id)
        try:
            await plugin.shutdown()
        except Exception as exc:
            logger.exception("Plugin %s failed to shut down", plugin_id)
            with self._lock:
                state.last_error = str(exc)
                state.last_error_at = utc_now()
            return PluginActionResult.failed(f"Shutdown failed: {exc}", plugin_id=plugin_id)
        with self._lock:
            state.is_initialized = False
        return PluginActionResult.successful("Plugin shut down", plugin_id=plugin_id)

    async def restart(self, plugin: PluginBase, configuration: dict[str, str]) -> PluginActionResult:
        down = await self.shutdown(plugin)
        if not down.success:
            return down
        state = self._state(plugin.metadata.id)
        with self._lock:
            state.restart_count += 1
        return await self.initialize(plugin, configuration)

    def check_health(self, plugin_id: str) -> PluginHealth:
        state = self.get_state(plugin_id)
        if state is None or not state.is_initialized:
            return PluginHealth(plugin_id, UNHEALTHY, "Plugin is not initialized")
        if state.last_error_at and utc_now() - state.last_error_at < DEGRADED_WINDOW:
            return PluginHealth(plugin_id, DEGRADED, f"Recent error: {state.last_error}")
        return PluginHealth(plugin_id, HEALTHY, "Plugin is running")

    def get_state(self, plugin_id: str) -> PluginState | None:
        with self._lock:
            state = self._states.get(plugin_id)
            return replace(state) if state else None

    def forget(self, plugin_id: str) -> None:
        with self._lock:
            self._states.pop(plugin_id, None)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


@lru_cache
def get_lifecycle_manager() -> PluginLifecycleManager:
    return PluginLifecycleManager()
