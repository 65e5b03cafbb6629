"""
Installed plugins.

A plugin is a directory under ``settings.PLUGINS_DIR`` with a ``manifest.json`` at its root.  It
may ship agents (``agents/@handle``) and external tools (``tools/<name>/tool.json``).  Installing
and updating plugins is someone else's job; this module only reads what is on disk.
"""

import logging
import os
from typing import (
    Dict,
    List,
    Optional,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
)

from relay.config import settings
from relay.tools.external import (
    ToolDefinition,
    ToolDefinitionError,
    load_tool_definition,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


class PluginManifest(BaseModel):
    """The subset of ``manifest.json`` the runner cares about."""

    name: str = Field(..., min_length=1)
    version: str = ""
    description: str = ""
    agents: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    default_tools: Dict[str, str] = Field(
        default_factory=dict, description="Category/alias -> tool name suggestions"
    )


class Plugin(BaseModel):
    """A loaded plugin and where it lives."""

    manifest: PluginManifest
    path: str


class PluginCatalog:
    """Read-only view over the installed plugins."""

    def __init__(self, plugins_dir: Optional[str] = None):
        root = plugins_dir or settings.PLUGINS_DIR or os.path.join(settings.DATA_DIR, "plugins")
        self.plugins_dir = os.path.expanduser(root)
        self._plugins: Optional[List[Plugin]] = None

    def plugins(self) -> List[Plugin]:
        """All plugins with a valid manifest, loaded once and sorted by directory name."""
        if self._plugins is None:
            self._plugins = self._scan()
        return self._plugins

    def _scan(self) -> List[Plugin]:
        if not os.path.isdir(self.plugins_dir):
            return []
        loaded = []
        for entry in sorted(os.listdir(self.plugins_dir)):
            path = os.path.join(self.plugins_dir, entry)
            manifest_path = os.path.join(path, MANIFEST_FILE)
            if not os.path.isfile(manifest_path):
                continue
            try:
                with open(manifest_path, "r", encoding="utf-8") as fh:
                    manifest = PluginManifest.model_validate_json(fh.read())
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping plugin %s: %s", entry, exc)
                continue
            loaded.append(Plugin(manifest=manifest, path=path))
        logger.debug("Loaded %d plugin(s) from %s", len(loaded), self.plugins_dir)
        return loaded

    # ------------------------------------------------------------------ #
    # Agents
    # ------------------------------------------------------------------ #
    def _owner(self, handle: str) -> Optional[Plugin]:
        for plugin in self.plugins():
            if handle in plugin.manifest.agents:
                return plugin
        return None

    def is_plugin_agent(self, handle: str) -> bool:
        """True if an installed plugin declares *handle*."""
        return self._owner(handle) is not None

    def agent_dir(self, handle: str) -> Optional[str]:
        """Directory holding the plugin agent *handle*, if any plugin ships it."""
        plugin = self._owner(handle)
        if plugin is None:
            return None
        return os.path.join(plugin.path, "agents", handle)

    # ------------------------------------------------------------------ #
    # Tools
    # ------------------------------------------------------------------ #
    def find_tool(self, name: str) -> Optional[Tuple[ToolDefinition, str]]:
        """
        Find the external tool *name*.

        Returns
        -------
        tuple or None
            ``(definition, plugin_dir)`` from the first plugin declaring the tool with a valid
            definition, else None.
        """
        for plugin in self.plugins():
            if name not in plugin.manifest.tools:
                continue
            try:
                return load_tool_definition(plugin.path, name), plugin.path
            except ToolDefinitionError as exc:
                logger.warning("Plugin %s: %s", plugin.manifest.name, exc)
        return None

    def default_tools(self) -> Dict[str, str]:
        """Merged ``default_tools`` suggestions; earlier plugins win."""
        merged: Dict[str, str] = {}
        for plugin in self.plugins():
            for alias, tool in plugin.manifest.default_tools.items():
                merged.setdefault(alias, tool)
        return merged
