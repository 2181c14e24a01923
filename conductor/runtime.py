"""ConductorRuntime - process-wide state of the conductor core.

Owns the resources shared by every session: provider adapters, the plugin
registry and hook pipeline, the tool dispatcher (and its thread pool), the
MCP tool client and the session store. Components receive what they need
from the runtime; nothing else holds global state.

Usage:
    runtime = ConductorRuntime.from_file("conductor.yaml")
    runtime.start()
    manager = runtime.create_session_manager()
    ...
    runtime.shutdown()

    # or
    with ConductorRuntime(config) as runtime:
        ...
"""

import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .builtin_tools import create_builtin_tools
from .config import MCPServerSpec, PluginSettings, ProviderSettings, RuntimeConfig, load_config
from .errors import ToolServerUnavailableError
from .mcp_client import MCPToolClient
from .plugins.hooks import HookPipeline
from .plugins.model_provider import load_provider
from .plugins.model_provider.adapter import ProviderAdapter
from .plugins.model_provider.base import ModelProviderPlugin, ProviderConfig
from .plugins.model_provider.types import ToolDefinition, ToolSource
from .plugins.registry import PluginRegistry
from .plugins.session import FileSessionStore, InMemorySessionStore, SessionStore
from .retry_utils import RequestPacer, RetryCallback, RetryConfig
from .session_manager import SessionManager
from .tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


def _provider_config(settings: ProviderSettings) -> ProviderConfig:
    return ProviderConfig(api_key=settings.api_key, base_url=settings.base_url,
                          extra=dict(settings.extra))


class ConductorRuntime:
    """Shared runtime environment for conductor sessions.

    Providers are registered once (``start()`` or ``register_provider``) and
    are read-only afterwards except for ``refresh_credentials``.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        store: Optional[SessionStore] = None,
        on_retry: Optional[RetryCallback] = None,
    ):
        self._config = config or RuntimeConfig()
        self._config_path: Optional[Path] = None
        policy = self._config.policy

        self.pipeline = HookPipeline()
        self.dispatcher = ToolDispatcher(
            max_concurrent_tools=policy.max_concurrent_tools,
            cancel_grace_period=policy.cancel_grace_period,
        )
        self.dispatcher.register_many(create_builtin_tools(self.dispatcher))
        self.registry = PluginRegistry(self.pipeline, self.dispatcher)
        self.mcp = MCPToolClient()

        if store is None:
            store = FileSessionStore(policy.session_dir) if policy.session_dir else InMemorySessionStore()
        self.store = store

        self._pacer = RequestPacer(policy.request_interval)
        self._on_retry = on_retry
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._started = False

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> 'ConductorRuntime':
        runtime = cls(load_config(path), **kwargs)
        runtime._config_path = Path(path)
        return runtime

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def is_started(self) -> bool:
        return self._started

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Load configured providers, plugins and MCP servers. Idempotent."""
        if self._started:
            return
        for settings in self._config.providers.values():
            if settings.name not in self._adapters:
                self.register_provider(load_provider(settings.name, _provider_config(settings)))
        if self._config.plugins:
            for plugin in self._config.plugins:
                self._load_plugin(plugin)
        elif self._config.plugin_package:
            self.registry.discover(self._config.plugin_package)
        self.registry.complete_loading()
        for spec in self._config.mcp_servers.values():
            self._connect_mcp_quietly(spec)
        self._started = True
        logger.info("Runtime started: providers=%s plugins=%s mcp=%s",
                    self.list_providers(), self.registry.list_plugins(),
                    list(self.mcp.list_servers()))

    def shutdown(self) -> None:
        """Tear down plugins, MCP servers, the tool pool and providers."""
        self.registry.unregister_all()
        self.mcp.shutdown()
        self.dispatcher.shutdown()
        for adapter in self._adapters.values():
            try:
                adapter.provider.shutdown()
            except Exception as exc:
                logger.warning("Provider '%s' shutdown failed: %s", adapter.name, exc)
        self._adapters.clear()
        self._started = False

    def __enter__(self) -> 'ConductorRuntime':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def reload(self, config: Optional[RuntimeConfig] = None) -> RuntimeConfig:
        """Re-read the configuration and apply what can change at runtime.

        Provider credentials are refreshed (new providers are loaded), MCP
        servers are connected/disconnected to match, agents and policy are
        replaced and the new retry policy is attached to every adapter.
        Plugins stay loaded.
        """
        if config is None:
            if self._config_path is None:
                raise ValueError("reload() needs a config when the runtime was not loaded from a file")
            config = load_config(self._config_path)

        old = self._config
        self._config = config

        for settings in config.providers.values():
            if settings.name in self._adapters:
                self.refresh_credentials(settings.name)
            else:
                self.register_provider(load_provider(settings.name, _provider_config(settings)))
        for adapter in self._adapters.values():
            adapter.retry_config = config.policy.retry
        self._pacer.interval = max(0.0, config.policy.request_interval)

        for name in set(old.mcp_servers) - set(config.mcp_servers):
            self.disconnect_mcp(name)
        for name, spec in config.mcp_servers.items():
            if name not in old.mcp_servers:
                self._connect_mcp_quietly(spec)
            elif spec != old.mcp_servers[name]:
                self.disconnect_mcp(name)
                self._connect_mcp_quietly(spec)

        logger.info("Runtime configuration reloaded")
        return config

    # ==================== Providers ====================

    def register_provider(
        self,
        provider: ModelProviderPlugin,
        retry_config: Optional[RetryConfig] = None,
    ) -> ProviderAdapter:
        """Register an initialized provider.

        Raises:
            ValueError: A provider with the same name is already registered.
        """
        if provider.name in self._adapters:
            raise ValueError(f"Provider '{provider.name}' is already registered")
        adapter = ProviderAdapter(
            provider,
            retry_config=retry_config or self._config.policy.retry,
            pacer=self._pacer,
            on_retry=self._on_retry,
        )
        self._adapters[provider.name] = adapter
        return adapter

    def refresh_credentials(self, name: str, config: Optional[ProviderConfig] = None) -> None:
        adapter = self.get_adapter(name)
        if config is None:
            settings = self._config.providers.get(name)
            config = _provider_config(settings) if settings else None
        adapter.provider.refresh_credentials(config)

    def get_adapter(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValueError(f"Provider '{name}' is not registered. Registered: {self.list_providers()}")
        return adapter

    def list_providers(self) -> List[str]:
        return list(self._adapters.keys())

    def resolve_model(self, model: Optional[str] = None) -> Tuple[ProviderAdapter, str]:
        """Map a model selection to (adapter, model name).

        ``model`` may be 'provider/model'; a prefix that is not a registered
        provider is treated as part of the model name. Without a prefix the
        default provider is used, or the only registered one.

        Raises:
            ValueError: No model selected or no provider to serve it.
        """
        model = model or self._config.default_model
        if not model:
            raise ValueError("No model selected and no default_model configured")

        provider_name = None
        if "/" in model:
            prefix, rest = model.split("/", 1)
            if prefix in self._adapters:
                provider_name, model = prefix, rest

        if provider_name is None:
            provider_name = self._config.default_provider
            if provider_name is None and len(self._adapters) == 1:
                provider_name = next(iter(self._adapters))
            if provider_name is None:
                raise ValueError(f"Cannot pick a provider for model '{model}'. "
                                 f"Registered: {self.list_providers()}")
        return self.get_adapter(provider_name), model

    # ==================== Plugins ====================

    def _load_plugin(self, settings: PluginSettings) -> None:
        module_name = settings.module
        if module_name is None:
            if self._config.plugin_package is None:
                raise ValueError(f"Plugin '{settings.name}' has no module and no plugin_package is configured")
            module_name = f"{self._config.plugin_package}.{settings.name}"
        module = importlib.import_module(module_name)
        factory = getattr(module, "create_plugin", None)
        if factory is None:
            raise ValueError(f"Plugin module '{module_name}' has no create_plugin() function")
        self.registry.register(factory(), settings.config)

    def register_plugin(self, plugin: Any, config: Optional[Dict[str, Any]] = None) -> None:
        self.registry.register(plugin, config)

    # ==================== MCP ====================

    def connect_mcp(self, spec: MCPServerSpec) -> List[ToolDefinition]:
        """Connect an MCP server and register its tools."""
        tools = self.mcp.connect(spec)
        self.dispatcher.register_many(tools, ToolSource.MCP)
        return tools

    def _connect_mcp_quietly(self, spec: MCPServerSpec) -> None:
        try:
            self.connect_mcp(spec)
        except ToolServerUnavailableError as exc:
            logger.warning("%s", exc)

    def reload_mcp(self, name: str) -> List[ToolDefinition]:
        """Re-discover a server's tools and replace them in the dispatcher."""
        tools = self.mcp.reload(name)
        self.dispatcher.unregister_owner(ToolSource.MCP, name)
        self.dispatcher.register_many(tools, ToolSource.MCP)
        return tools

    def disconnect_mcp(self, name: str) -> None:
        self.dispatcher.unregister_owner(ToolSource.MCP, name)
        try:
            self.mcp.disconnect(name)
        except ValueError:
            logger.debug("MCP server '%s' was not connected", name)

    # ==================== Sessions ====================

    def create_session_manager(self) -> SessionManager:
        return SessionManager(self)
