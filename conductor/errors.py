"""Error taxonomy for the conductor core.

Every exception raised by the core carries a ``condition`` code. The code is
what ends up in session history and in ``TurnOutcome.conditions``, so callers
can react to a failure class without matching on exception types.

Conditions:
    provider-error          Provider call failed (``retryable`` tells which class).
    malformed-completion    The response stream could not be parsed.
    invalid-arguments       Tool arguments failed schema validation.
    tool-execution-error    A tool handler raised or the tool is unknown.
    tool-server-unavailable The MCP server backing a tool is not ready.
    session-busy            A prompt is already in flight for the session.
    tool-loop-exceeded      The tool-call loop hit its iteration limit.
    persistence-error       Saving a snapshot failed (reported, never thrown).
    plugin-hook-error       A plugin hook raised (isolated).
"""

from typing import List, Optional


PROVIDER_ERROR = "provider-error"
MALFORMED_COMPLETION = "malformed-completion"
INVALID_ARGUMENTS = "invalid-arguments"
TOOL_EXECUTION_ERROR = "tool-execution-error"
TOOL_SERVER_UNAVAILABLE = "tool-server-unavailable"
SESSION_BUSY = "session-busy"
TOOL_LOOP_EXCEEDED = "tool-loop-exceeded"
PERSISTENCE_ERROR = "persistence-error"
PLUGIN_HOOK_ERROR = "plugin-hook-error"
CANCELLED = "cancelled"
PROMPT_VETOED = "prompt-vetoed"
SESSION_ARCHIVED = "session-archived"
SESSION_NOT_FOUND = "session-not-found"
INVALID_SNAPSHOT = "invalid-snapshot"
PLUGIN_INVALID = "plugin-invalid"
HISTORY_INVARIANT = "history-invariant"

# Conditions that end a turn in the FAILED state.
FATAL_CONDITIONS = frozenset({PROVIDER_ERROR, TOOL_LOOP_EXCEEDED})


class ConductorError(Exception):
    """Base exception for all conductor errors."""

    condition: str = "error"

    def __init__(self, message: str = "", condition: Optional[str] = None):
        if condition is not None:
            self.condition = condition
        self.message = message or self.condition
        super().__init__(self.message)


# ==================== Provider ====================

class ProviderError(ConductorError):
    """A provider call failed.

    Attributes:
        provider: Name of the provider that failed.
        retryable: True for transient failures (rate limit, timeout, 5xx).
        status_code: HTTP-like status code when known.
    """

    condition = PROVIDER_ERROR
    retryable = False

    def __init__(
        self,
        message: str = "",
        provider: Optional[str] = None,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ):
        self.provider = provider
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message or "Provider call failed")


class ProviderTransientError(ProviderError):
    """Rate limit, timeout or server-side failure; safe to retry."""

    retryable = True

    def __init__(
        self,
        message: str = "",
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        rate_limit: bool = False,
    ):
        self.retry_after = retry_after
        self.rate_limit = rate_limit
        super().__init__(message, provider=provider, status_code=status_code)


class ProviderAuthError(ProviderError):
    """Credentials missing or rejected. Never retried."""


class ProviderRequestError(ProviderError):
    """The request itself was rejected (bad input, unknown model). Never retried."""


# ==================== Parsing ====================

class MalformedCompletionError(ConductorError):
    """The provider stream ended in a state the parser cannot close."""

    condition = MALFORMED_COMPLETION


# ==================== Tools ====================

class ToolError(ConductorError):
    """Base class for dispatch failures; converted into failed ToolResults."""

    condition = TOOL_EXECUTION_ERROR

    def __init__(self, message: str = "", tool_name: Optional[str] = None):
        self.tool_name = tool_name
        super().__init__(message)


class InvalidArgumentsError(ToolError):
    """Arguments failed validation against the tool's parameter schema."""

    condition = INVALID_ARGUMENTS

    def __init__(self, tool_name: str, problems: List[str]):
        self.problems = list(problems)
        super().__init__(
            f"Invalid arguments for '{tool_name}': " + "; ".join(self.problems),
            tool_name=tool_name,
        )


class ToolExecutionError(ToolError):
    """A tool handler failed or no handler exists."""

    condition = TOOL_EXECUTION_ERROR


class ToolServerUnavailableError(ToolError):
    """The MCP server backing a tool is stopped or crashed."""

    condition = TOOL_SERVER_UNAVAILABLE

    def __init__(self, server_name: str, message: str = "", tool_name: Optional[str] = None):
        self.server_name = server_name
        super().__init__(
            message or f"Tool server '{server_name}' is unavailable",
            tool_name=tool_name,
        )


# ==================== Sessions ====================

class SessionBusyError(ConductorError):
    """A prompt was submitted while another is still in flight."""

    condition = SESSION_BUSY

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' already has a prompt in flight")


class SessionNotFoundError(ConductorError):
    condition = SESSION_NOT_FOUND

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class SessionArchivedError(ConductorError):
    """Archived sessions are immutable snapshots."""

    condition = SESSION_ARCHIVED

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' is archived and cannot be modified")


class ToolLoopExceededError(ConductorError):
    condition = TOOL_LOOP_EXCEEDED

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Tool-call loop exceeded the limit of {limit} iterations")


class HistoryInvariantError(ConductorError):
    """A message would break the ToolCall/ToolResult pairing of a session."""

    condition = HISTORY_INVARIANT


class SnapshotError(ConductorError):
    """A session snapshot could not be decoded."""

    condition = INVALID_SNAPSHOT


class PersistenceError(ConductorError):
    condition = PERSISTENCE_ERROR

    def __init__(self, session_id: str, message: str = ""):
        self.session_id = session_id
        super().__init__(message or f"Failed to persist session '{session_id}'")


# ==================== Plugins ====================

class PluginValidationError(ConductorError):
    """A plugin does not have the expected shape."""

    condition = PLUGIN_INVALID


class HookError(ConductorError):
    """Record of a hook that raised; kept by the pipeline, never thrown."""

    condition = PLUGIN_HOOK_ERROR

    def __init__(self, point: str, owner: Optional[str], error: BaseException):
        self.point = point
        self.owner = owner
        self.error = error
        who = f"plugin '{owner}'" if owner else "anonymous hook"
        super().__init__(f"Hook {point} of {who} failed: {type(error).__name__}: {error}")


class HookVeto(ConductorError):
    """Raised by an on_prompt hook to reject the prompt."""

    condition = PROMPT_VETOED

    def __init__(self, reason: str = "Prompt rejected by plugin"):
        self.reason = reason
        super().__init__(reason)

