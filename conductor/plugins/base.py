"""Base protocol for conductor plugins."""

from enum import Enum
from typing import Any, Callable, Dict, List, Protocol, Union, runtime_checkable

from .model_provider.types import ToolDefinition


class HookPoint(str, Enum):
    """Points in a session's lifecycle where plugin hooks run.

    ``ON_PROMPT`` and ``ON_RESPONSE`` are transforming points: a hook that
    returns a non-None value replaces the payload for the rest of the chain.
    The others are observers and their return value is ignored.
    """
    ON_LOAD = "on_load"
    ON_PROMPT = "on_prompt"
    ON_RESPONSE = "on_response"
    ON_COMPLETE = "on_complete"
    ON_ERROR = "on_error"
    ON_SESSION_START = "on_session_start"
    ON_SESSION_END = "on_session_end"

    @property
    def transforms(self) -> bool:
        return self in (HookPoint.ON_PROMPT, HookPoint.ON_RESPONSE)


# hook(payload, context) -> replacement payload or None
Hook = Callable[[Any, Any], Any]


@runtime_checkable
class ConductorPlugin(Protocol):
    """Interface that all plugins must implement.

    A plugin contributes tools (executed by the tool dispatcher) and hooks
    (run by the hook pipeline). Both mappings are read once, when the plugin
    is registered.

    Optional methods, called when present:
        initialize(config: Optional[Dict[str, Any]]) -> None
        shutdown() -> None
        get_system_instructions() -> Optional[str]

    Example:
        class AuditPlugin:
            name = "audit"
            version = "1.0"

            def get_tool_definitions(self):
                return {}

            def get_hooks(self):
                return {HookPoint.ON_COMPLETE: self._record}
    """

    @property
    def name(self) -> str:
        """Unique plugin name; also the owner recorded for its tools and hooks."""
        ...

    @property
    def version(self) -> str:
        ...

    def get_tool_definitions(self) -> Dict[str, ToolDefinition]:
        """Map of tool name to ToolDefinition (handler included)."""
        ...

    def get_hooks(self) -> Dict[Union[HookPoint, str], Union[Hook, List[Hook]]]:
        """Map of hook point to one hook or an ordered list of hooks."""
        ...
