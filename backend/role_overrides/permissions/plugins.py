"""
Process-wide plugin registry.

Plugins are registered at startup; whether a registered plugin is enabled is
decided by its PluginSetting row, which is read live on every check.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional


@dataclass(frozen=True)
class Plugin:
    id: str
    name: str
    default_settings: Dict[str, Any] = field(default_factory=dict)


class PluginRegistry:
    def __init__(self):
        self._plugins: Dict[str, Plugin] = {}

    def register(self, plugin_id: str, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None) -> Plugin:
        plugin = Plugin(id=str(plugin_id), name=name or str(plugin_id), default_settings=dict(settings or {}))
        self._plugins[plugin.id] = plugin
        return plugin

    def unregister(self, plugin_id: str) -> None:
        self._plugins.pop(str(plugin_id), None)

    def find(self, plugin_id: str) -> Optional[Plugin]:
        return self._plugins.get(str(plugin_id))

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    @contextmanager
    def scoped(self) -> Iterator["PluginRegistry"]:
        """Registrations made inside the block are discarded on exit."""
        snapshot = dict(self._plugins)
        try:
            yield self
        finally:
            self._plugins = snapshot


plugin_registry = PluginRegistry()
