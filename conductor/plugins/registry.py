"""Plugin registry: validation, loading and teardown of conductor plugins."""

import importlib
import logging
import pkgutil
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from ..errors import PluginValidationError
from .base import ConductorPlugin, HookPoint
from .hooks import HookContext, HookPipeline
from .model_provider.types import ToolDefinition, ToolSource

if TYPE_CHECKING:
    from ..tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


class PluginRegistry:
    """Validates plugins and wires their tools and hooks into the core.

    Registration order is load order: it decides hook order within a point
    and which plugin wins when two register the same tool name.

    Usage:
        registry = PluginRegistry(pipeline, dispatcher)
        registry.discover("my_app.plugins", configs={"audit": {"path": "/tmp/a"}})
        registry.register(MyPlugin())
        registry.complete_loading()  # fires on_load once

        registry.unregister("audit")
        registry.unregister_all()
    """

    def __init__(self, pipeline: HookPipeline, dispatcher: 'ToolDispatcher'):
        self._pipeline = pipeline
        self._dispatcher = dispatcher
        self._plugins: Dict[str, Any] = {}
        self._loaded = False

    # ==================== Validation ====================

    @staticmethod
    def validate(plugin: Any) -> Tuple[Dict[str, ToolDefinition], List[Tuple[HookPoint, Any]]]:
        """Check the plugin's shape and return its tools and (point, hook) pairs.

        Raises:
            PluginValidationError: Missing attributes or malformed mappings.
        """
        name = getattr(plugin, "name", None)
        if not isinstance(name, str) or not name:
            raise PluginValidationError(f"Plugin {plugin!r} has no valid 'name'")
        if not isinstance(plugin, ConductorPlugin):
            raise PluginValidationError(
                f"Plugin '{name}' must provide name, version, get_tool_definitions() and get_hooks()"
            )
        if not isinstance(plugin.version, str):
            raise PluginValidationError(f"Plugin '{name}' has a non-string version")

        tools = plugin.get_tool_definitions() or {}
        if not isinstance(tools, dict):
            raise PluginValidationError(f"Plugin '{name}': get_tool_definitions() must return a dict")
        for tool_name, tool in tools.items():
            if not isinstance(tool, ToolDefinition):
                raise PluginValidationError(
                    f"Plugin '{name}': tool '{tool_name}' is not a ToolDefinition"
                )
            if tool.name != tool_name:
                raise PluginValidationError(
                    f"Plugin '{name}': tool registered as '{tool_name}' is named '{tool.name}'"
                )
            if not callable(tool.handler):
                raise PluginValidationError(f"Plugin '{name}': tool '{tool_name}' has no handler")

        hooks = plugin.get_hooks() or {}
        if not isinstance(hooks, dict):
            raise PluginValidationError(f"Plugin '{name}': get_hooks() must return a dict")
        pairs: List[Tuple[HookPoint, Any]] = []
        for point, value in hooks.items():
            try:
                point = HookPoint(point)
            except ValueError:
                raise PluginValidationError(f"Plugin '{name}': unknown hook point '{point}'")
            for hook in (value if isinstance(value, (list, tuple)) else [value]):
                if not callable(hook):
                    raise PluginValidationError(
                        f"Plugin '{name}': hook for {point.value} is not callable"
                    )
                pairs.append((point, hook))

        return tools, pairs

    # ==================== Lifecycle ====================

    def register(self, plugin: Any, config: Optional[Dict[str, Any]] = None) -> None:
        """Validate, initialize and wire in a plugin.

        Raises:
            PluginValidationError: Malformed plugin or duplicate name.
        """
        tools, hooks = self.validate(plugin)
        name = plugin.name
        if name in self._plugins:
            raise PluginValidationError(f"Plugin '{name}' is already registered")

        initialize = getattr(plugin, "initialize", None)
        if callable(initialize):
            initialize(config)

        for tool in tools.values():
            self._dispatcher.register(replace(tool, source=ToolSource.PLUGIN, owner=name))
        for point, hook in hooks:
            self._pipeline.register(hook, point, owner=name)

        self._plugins[name] = plugin
        logger.info("Registered plugin %s %s (%d tools, %d hooks)",
                    name, plugin.version, len(tools), len(hooks))

    def unregister(self, name: str) -> None:
        """Remove a plugin's tools and hooks and call its ``shutdown()``."""
        plugin = self._plugins.pop(name, None)
        if plugin is None:
            raise ValueError(f"Plugin '{name}' not found. Registered: {self.list_plugins()}")
        self._pipeline.unregister_owner(name)
        self._dispatcher.unregister_owner(ToolSource.PLUGIN, name)
        shutdown = getattr(plugin, "shutdown", None)
        if callable(shutdown):
            try:
                shutdown()
            except Exception as exc:
                logger.warning("Plugin '%s' shutdown failed: %s", name, exc)

    def unregister_all(self) -> None:
        for name in reversed(self.list_plugins()):
            self.unregister(name)
        self._loaded = False

    def discover(self, package: str, configs: Optional[Dict[str, Dict[str, Any]]] = None) -> List[str]:
        """Register every module in ``package`` exposing a ``create_plugin()`` factory.

        Modules are visited in name order. A module that fails to import, whose
        factory raises, or that yields a plugin failing validation or
        initialization is logged and skipped.

        Returns:
            Names of the plugins registered.
        """
        configs = configs or {}
        module = importlib.import_module(package)
        registered = []

        for _finder, mod_name, _ispkg in sorted(pkgutil.iter_modules(module.__path__), key=lambda m: m[1]):
            if mod_name.startswith('_') or mod_name == "tests":
                continue
            try:
                submodule = importlib.import_module(f"{package}.{mod_name}")
            except Exception as exc:
                logger.warning("Error importing plugin module '%s': %s", mod_name, exc)
                continue

            factory = getattr(submodule, "create_plugin", None)
            if factory is None:
                logger.debug("%s: no create_plugin() function found", mod_name)
                continue

            try:
                plugin = factory()
                self.register(plugin, configs.get(getattr(plugin, "name", mod_name)))
            except PluginValidationError as exc:
                logger.warning("Skipping plugin module '%s': %s", mod_name, exc)
                continue
            except Exception as exc:
                logger.warning("Skipping plugin module '%s': %s: %s", mod_name, type(exc).__name__, exc)
                continue
            registered.append(plugin.name)

        return registered

    def complete_loading(self) -> None:
        """Fire on_load once, after all plugins are registered."""
        if self._loaded:
            return
        self._loaded = True
        self._pipeline.run(HookPoint.ON_LOAD, self.list_plugins(), HookContext())

    # ==================== Queries ====================

    def list_plugins(self) -> List[str]:
        """Registered plugin names in load order."""
        return list(self._plugins.keys())

    def get_plugin(self, name: str) -> Optional[Any]:
        return self._plugins.get(name)

    def get_system_instructions(self) -> Optional[str]:
        """Combined system instructions of all plugins that provide them."""
        parts = []
        for plugin in self._plugins.values():
            getter = getattr(plugin, "get_system_instructions", None)
            if callable(getter):
                text = getter()
                if text:
                    parts.append(text.strip())
        return "\n\n".join(parts) if parts else None
