# Conductor core package
#
# Unified import surface for the conversation orchestration core:
#
#   from conductor import (
#       ConductorRuntime, SessionManager, RuntimeConfig, load_config,
#       ToolDefinition, ParameterSpec, HookPoint, HookVeto,
#   )
#
# Lazy loading: imports are deferred via __getattr__ so that importing a leaf
# module (e.g. conductor.trace) does not pull in the provider SDKs.

# Mapping from public name -> (module_path, attribute_name)
_LAZY_IMPORTS = {
    # Runtime and sessions
    "ConductorRuntime": (".runtime", "ConductorRuntime"),
    "SessionManager": (".session_manager", "SessionManager"),
    "Session": (".session", "Session"),
    "SessionHandle": (".session", "SessionHandle"),
    "TurnOutcome": (".session", "TurnOutcome"),
    "TurnState": (".session", "TurnState"),
    # Configuration
    "RuntimeConfig": (".config", "RuntimeConfig"),
    "MCPServerSpec": (".config", "MCPServerSpec"),
    "AgentProfile": (".config", "AgentProfile"),
    "PolicyConfig": (".config", "PolicyConfig"),
    "load_config": (".config", "load_config"),
    # Components
    "ToolDispatcher": (".tool_dispatcher", "ToolDispatcher"),
    "ResponseParser": (".response_parser", "ResponseParser"),
    "MCPToolClient": (".mcp_client", "MCPToolClient"),
    "HookPipeline": (".plugins.hooks", "HookPipeline"),
    "HookPoint": (".plugins.base", "HookPoint"),
    "PluginRegistry": (".plugins.registry", "PluginRegistry"),
    "ProviderAdapter": (".plugins.model_provider.adapter", "ProviderAdapter"),
    "load_provider": (".plugins.model_provider", "load_provider"),
    "RetryConfig": (".retry_utils", "RetryConfig"),
    # Provider-agnostic types
    "Message": (".plugins.model_provider.types", "Message"),
    "Role": (".plugins.model_provider.types", "Role"),
    "ToolDefinition": (".plugins.model_provider.types", "ToolDefinition"),
    "ParameterSpec": (".plugins.model_provider.types", "ParameterSpec"),
    "CancelToken": (".plugins.model_provider.types", "CancelToken"),
    # Errors
    "ConductorError": (".errors", "ConductorError"),
    "HookVeto": (".errors", "HookVeto"),
    "SessionBusyError": (".errors", "SessionBusyError"),
}


def __getattr__(name):
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        import importlib
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = list(_LAZY_IMPORTS)
