from __future__ import annotations

import importlib
import logging
import threading
from functools import lru_cache
from importlib.metadata import entry_points
from typing import Iterable, TypeVar

from squirrel.src.modules.plugin_contracts import (
    AuthenticationPlugin,
    MarkdownExtensionPlugin,
    PluginBase,
    PluginType,
    SearchPlugin,
)

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "squirrel_wiki.plugins"
BUNDLED_PLUGIN_MODULES = (
    "squirrel.src.plugins.table_of_contents",
    "squirrel.src.plugins.whoosh_search",
    "squirrel.src.plugins.oidc_auth",
)

P = TypeVar("P", bound=PluginBase)


def plugin_type_of(plugin: PluginBase) -> str:
    if isinstance(plugin, AuthenticationPlugin):
        return PluginType.AUTHENTICATION.value
    if isinstance(plugin, SearchPlugin):
        return PluginType.SEARCH_PROVIDER.value
    if isinstance(plugin, MarkdownExtensionPlugin):
        return PluginType.MARKDOWN_EXTENSION.value
    return plugin.metadata.type.value


class PluginRegistry:
    """Loaded plugin instances keyed by plugin id, plus the enabled set mirrored from the DB."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._plugins: dict[str, PluginBase] = {}
        self._enabled: set[str] = set()

    def register(self, plugin: PluginBase) -> None:
        plugin_id = plugin.metadata.id
        with self._lock:
            if plugin_id in self._plugins:
                logger.warning("Plugin %s already loaded; replacing instance", plugin_id)
            self._plugins[plugin_id] = plugin
        logger.info("Loaded plugin %s (%s) v%s", plugin_id, plugin_type_of(plugin), plugin.metadata.version)

    def unregister(self, plugin_id: str) -> None:
        with self._lock:
            self._plugins.pop(plugin_id, None)
            self._enabled.discard(plugin_id)

    def get(self, plugin_id: str) -> PluginBase | None:
        return self._plugins.get(plugin_id)

    def all(self) -> list[PluginBase]:
        return list(self._plugins.values())

    def set_enabled(self, plugin_id: str, enabled: bool) -> None:
        with self._lock:
            if enabled:
                self._enabled.add(plugin_id)
            else:
                self._enabled.discard(plugin_id)

    def is_enabled(self, plugin_id: str) -> bool:
        return plugin_id in self._enabled

    def enabled_of_type(self, cls: type[P]) -> list[P]:
        return [
            plugin
            for plugin_id, plugin in self._plugins.items()
            if plugin_id in self._enabled and isinstance(plugin, cls) and plugin.is_initialized
        ]

    def markdown_extensions(self) -> list[MarkdownExtensionPlugin]:
        return self.enabled_of_type(MarkdownExtensionPlugin)

    def clear(self) -> None:
        with self._lock:
            self._plugins.clear()
            self._enabled.clear()


def _instantiate(candidate) -> list[PluginBase]:
    if isinstance(candidate, PluginBase):
        return [candidate]
    if isinstance(candidate, type) and issubclass(candidate, PluginBase):
        return [candidate()]
    if callable(candidate):
        produced = candidate()
        if isinstance(produced, PluginBase):
            return [produced]
        return [p for p in produced or [] if isinstance(p, PluginBase)]
    return []


def load_plugins_from_module(module_path: str, registry: PluginRegistry) -> int:
    try:
        module = importlib.import_module(module_path)
    except Exception:
        logger.exception("Failed to import plugin module '%s'", module_path)
        return 0
    factory = getattr(module, "get_plugins", None)
    if factory is None:
        logger.warning("Plugin module %s has no get_plugins(); skipping", module_path)
        return 0
    count = 0
    try:
        for plugin in _instantiate(factory):
            registry.register(plugin)
            count += 1
    except Exception:
        logger.exception("Failed to instantiate plugins from '%s'", module_path)
    return count


def load_plugins_from_entry_points(registry: PluginRegistry, group: str = ENTRY_POINT_GROUP) -> int:
    count = 0
    for ep in entry_points(group=group):
        try:
            for plugin in _instantiate(ep.load()):
                registry.register(plugin)
                count += 1
        except Exception:
            logger.exception("Failed to load plugin entry point '%s'", ep.name)
    return count


def load_plugins(registry: PluginRegistry, module_paths: Iterable[str] = ()) -> int:
    """Load bundled plugins, configured module paths and installed entry points."""
    total = 0
    seen: set[str] = set()
    for path in list(BUNDLED_PLUGIN_MODULES) + list(module_paths):
        if path in seen:
            continue
        seen.add(path)
        total += load_plugins_from_module(path, registry)
    total += load_plugins_from_entry_points(registry)
    logger.info("Plugin loader finished: %d plugin(s) available", total)
    return total


@lru_cache
def get_plugin_registry() -> PluginRegistry:
    return PluginRegistry()
