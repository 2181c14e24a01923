"""Runtime configuration for the conductor core.

The configuration is a static structure handed to ``ConductorRuntime``. It is
built from a plain dict or a JSON/YAML file and then treated as read-only;
``ConductorRuntime.reload()`` is the only way to pick up a changed file.

Example (YAML):

    default_provider: anthropic
    default_model: claude-sonnet-4-5
    providers:
      anthropic:
        api_key: sk-ant-...
    plugins:
      - name: audit
        config: {path: /tmp/audit.log}
    mcp_servers:
      github:
        command: npx
        args: [-y, "@modelcontextprotocol/server-github"]
        env: {GITHUB_TOKEN: ...}
    agents:
      reviewer:
        model: claude-opus-4-1
        system_instruction: You review code.
        tools: [list_tools, search]
    policy:
      max_tool_iterations: 5
      max_concurrent_tools: 4

Environment overrides (applied by ``load_config`` and ``from_dict``):
    AI_RETRY_ATTEMPTS, AI_RETRY_BASE_DELAY, AI_RETRY_MAX_DELAY,
    AI_REQUEST_INTERVAL, CONDUCTOR_MAX_TOOL_ITERATIONS,
    CONDUCTOR_MAX_CONCURRENT_TOOLS, CONDUCTOR_SESSION_DIR
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .retry_utils import RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 5
DEFAULT_MAX_CONCURRENT_TOOLS = 4
DEFAULT_CANCEL_GRACE_PERIOD = 2.0
DEFAULT_MCP_CALL_TIMEOUT = 60.0
DEFAULT_MCP_STARTUP_TIMEOUT = 30.0


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return None


@dataclass
class ProviderSettings:
    """Credentials and options for one model provider.

    Attributes:
        name: Provider name as used by ``load_provider`` (e.g. 'anthropic').
        api_key: API key; None lets the provider resolve it from the environment.
        base_url: Optional endpoint override.
        extra: Provider-specific options (max_tokens, enable_caching, host...).
    """
    name: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'ProviderSettings':
        data = dict(data or {})
        return cls(
            name=name,
            api_key=data.pop('api_key', None),
            base_url=data.pop('base_url', None),
            extra=data.pop('extra', None) or data,
        )


@dataclass
class PluginSettings:
    """An enabled plugin: importable module path or discovered name, plus its config."""
    name: str
    module: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Union[str, Dict[str, Any]]) -> 'PluginSettings':
        if isinstance(value, str):
            return cls(name=value)
        return cls(
            name=value['name'],
            module=value.get('module'),
            config=value.get('config') or {},
        )


@dataclass
class MCPServerSpec:
    """How to launch one MCP server over stdio.

    Attributes:
        name: Server name; also the owner of the tools it provides.
        command: Executable to launch.
        args: Command-line arguments.
        env: Extra environment variables, merged over ``os.environ``.
        cwd: Working directory for the subprocess.
        call_timeout: Default per-invocation timeout in seconds.
        startup_timeout: Seconds to wait for initialize + list_tools.
    """
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    call_timeout: float = DEFAULT_MCP_CALL_TIMEOUT
    startup_timeout: float = DEFAULT_MCP_STARTUP_TIMEOUT

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'MCPServerSpec':
        if not data.get('command'):
            raise ValueError(f"MCP server '{name}' has no command")
        return cls(
            name=name,
            command=data['command'],
            args=list(data.get('args', [])),
            env=dict(data.get('env') or {}),
            cwd=data.get('cwd'),
            call_timeout=float(data.get('call_timeout', DEFAULT_MCP_CALL_TIMEOUT)),
            startup_timeout=float(data.get('startup_timeout', DEFAULT_MCP_STARTUP_TIMEOUT)),
        )


@dataclass
class AgentProfile:
    """A named agent: model override, system instruction and tool allow-list.

    Attributes:
        name: Agent name, referenced by sessions.
        model: Model override ('provider/model' or a bare model name).
        system_instruction: Prepended to plugin system instructions.
        tools: Tool allow-list; None exposes the whole active tool set.
    """
    name: str
    model: Optional[str] = None
    system_instruction: Optional[str] = None
    tools: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'AgentProfile':
        data = data or {}
        tools = data.get('tools')
        return cls(
            name=data.get('name') or name,
            model=data.get('model'),
            system_instruction=data.get('system_instruction'),
            tools=list(tools) if tools is not None else None,
        )


@dataclass
class PolicyConfig:
    """Limits and timings of the turn loop.

    Attributes:
        max_tool_iterations: Provider round trips allowed after tool results
            within one turn. Must be >= 1.
        max_concurrent_tools: Size of the tool thread pool.
        cancel_grace_period: Seconds in-flight tools get after cancellation.
        retry: Retry policy attached to every provider call.
        request_interval: Minimum seconds between provider requests (0 disables).
        session_dir: Directory of the file session store; None keeps sessions in memory.
    """
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    max_concurrent_tools: int = DEFAULT_MAX_CONCURRENT_TOOLS
    cancel_grace_period: float = DEFAULT_CANCEL_GRACE_PERIOD
    retry: RetryConfig = field(default_factory=RetryConfig)
    request_interval: float = 0.0
    session_dir: Optional[str] = None

    def __post_init__(self):
        if self.max_tool_iterations < 1:
            raise ValueError(f"max_tool_iterations must be >= 1, got {self.max_tool_iterations}")
        if self.max_concurrent_tools < 1:
            raise ValueError(f"max_concurrent_tools must be >= 1, got {self.max_concurrent_tools}")
        if self.cancel_grace_period < 0:
            raise ValueError(f"cancel_grace_period must be >= 0, got {self.cancel_grace_period}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyConfig':
        data = data or {}
        retry_data = data.get('retry') or {}

        retry_kwargs: Dict[str, Any] = {}
        for key, env_var, convert in (
            ('max_attempts', 'AI_RETRY_ATTEMPTS', _env_int),
            ('base_delay', 'AI_RETRY_BASE_DELAY', _env_float),
            ('max_delay', 'AI_RETRY_MAX_DELAY', _env_float),
        ):
            value = convert(env_var)
            if value is None:
                value = retry_data.get(key)
            if value is not None:
                retry_kwargs[key] = value
        if 'jitter_factor' in retry_data:
            retry_kwargs['jitter_factor'] = float(retry_data['jitter_factor'])

        max_iterations = _env_int('CONDUCTOR_MAX_TOOL_ITERATIONS')
        max_tools = _env_int('CONDUCTOR_MAX_CONCURRENT_TOOLS')
        interval = _env_float('AI_REQUEST_INTERVAL')

        return cls(
            max_tool_iterations=(max_iterations if max_iterations is not None
                                 else int(data.get('max_tool_iterations', DEFAULT_MAX_TOOL_ITERATIONS))),
            max_concurrent_tools=(max_tools if max_tools is not None
                                  else int(data.get('max_concurrent_tools', DEFAULT_MAX_CONCURRENT_TOOLS))),
            cancel_grace_period=float(data.get('cancel_grace_period', DEFAULT_CANCEL_GRACE_PERIOD)),
            retry=RetryConfig(**retry_kwargs),
            request_interval=interval if interval is not None else float(data.get('request_interval', 0.0)),
            session_dir=os.environ.get('CONDUCTOR_SESSION_DIR') or data.get('session_dir'),
        )


@dataclass
class RuntimeConfig:
    """Top-level configuration of a ``ConductorRuntime``.

    Attributes:
        default_provider: Provider used when a model has no 'provider/' prefix.
        default_model: Model used when a session names none.
        providers: Provider settings by provider name.
        plugins: Enabled plugins, in load order.
        plugin_package: Package holding plugin modules. Plugins listed by name
            are imported from it; with no plugins listed every module in it
            is discovered.
        mcp_servers: MCP servers by name.
        agents: Agent profiles by name.
        policy: Turn-loop limits and retry policy.
    """
    default_provider: Optional[str] = None
    default_model: Optional[str] = None
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)
    plugins: List[PluginSettings] = field(default_factory=list)
    plugin_package: Optional[str] = None
    mcp_servers: Dict[str, MCPServerSpec] = field(default_factory=dict)
    agents: Dict[str, AgentProfile] = field(default_factory=dict)
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    def get_agent(self, name: Optional[str]) -> Optional[AgentProfile]:
        if name is None:
            return None
        return self.agents.get(name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuntimeConfig':
        """Create a RuntimeConfig from a plain dictionary.

        ``mcp_servers`` also accepts the ``mcpServers`` key used by
        ``.mcp.json`` files.
        """
        data = data or {}
        providers = {
            name: ProviderSettings.from_dict(name, value)
            for name, value in (data.get('providers') or {}).items()
        }
        servers_data = data.get('mcp_servers') or data.get('mcpServers') or {}
        servers = {
            name: MCPServerSpec.from_dict(name, value)
            for name, value in servers_data.items()
        }
        agents = {
            name: AgentProfile.from_dict(name, value)
            for name, value in (data.get('agents') or {}).items()
        }
        default_provider = data.get('default_provider')
        if default_provider is None and len(providers) == 1:
            default_provider = next(iter(providers))

        return cls(
            default_provider=default_provider,
            default_model=data.get('default_model'),
            providers=providers,
            plugins=[PluginSettings.from_value(p) for p in data.get('plugins') or []],
            plugin_package=data.get('plugin_package'),
            mcp_servers=servers,
            agents=agents,
            policy=PolicyConfig.from_dict(data.get('policy') or {}),
        )


def load_config(path: Union[str, Path]) -> RuntimeConfig:
    """Load a RuntimeConfig from a JSON or YAML file.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        ValueError: The file is not a mapping or has an unknown suffix.
    """
    path = Path(path)
    content = path.read_text(encoding='utf-8')
    if path.suffix in ('.yaml', '.yml'):
        data = yaml.safe_load(content)
    elif path.suffix == '.json':
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported config file type: {path.suffix or path.name}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    logger.debug("Loaded config from %s", path)
    return RuntimeConfig.from_dict(data)
