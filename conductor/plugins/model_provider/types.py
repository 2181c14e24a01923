"""Provider-agnostic types for model interactions.

These types are shared by the provider adapters, the response parser, the
tool dispatcher and the session manager. Nothing here depends on a vendor SDK;
each provider converts to and from its own wire types.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Message role in a conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"  # condition records shown to the user, never sent to a model


# ==================== Segments ====================

@dataclass(frozen=True)
class TextSegment:
    """Free prose."""
    text: str

    type = "text"


@dataclass(frozen=True)
class CodeBlockSegment:
    """A fenced code block; ``language`` is the fence's info string, if any."""
    language: Optional[str]
    content: str

    type = "code"


@dataclass(frozen=True)
class ToolCallSegment:
    """A tool invocation requested by the model.

    Attributes:
        name: Name of the tool to call.
        arguments: Arguments decoded from the provider's tool-call structure.
        call_id: Identifier used to pair the call with its ToolResultSegment.
    """
    name: str
    arguments: Dict[str, Any]
    call_id: str

    type = "tool_call"


@dataclass(frozen=True)
class ToolResultSegment:
    """Outcome of a tool call, fed back to the model.

    Attributes:
        call_id: ID of the ToolCallSegment this result answers.
        payload: JSON-serializable result data (or error description).
        success: False when validation, execution or the tool server failed.
        name: Name of the tool that was called.
        condition: Error condition code when ``success`` is False.
    """
    call_id: str
    payload: Any
    success: bool
    name: str = ""
    condition: Optional[str] = None

    type = "tool_result"


Segment = Union[TextSegment, CodeBlockSegment, ToolCallSegment, ToolResultSegment]


def _generate_message_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    """ISO-8601 UTC timestamp used for messages and sessions."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Message:
    """A message in a conversation. Immutable once created.

    Attributes:
        role: Who produced the message.
        segments: Ordered content segments.
        timestamp: ISO-8601 creation time.
        message_id: Unique identifier.
        parent_id: ID of the message this one follows (threading lookup only).
        partial: True when the producing stream was cancelled before completion.
    """
    role: Role
    segments: Tuple[Segment, ...] = ()
    timestamp: str = field(default_factory=utc_now)
    message_id: str = field(default_factory=_generate_message_id)
    parent_id: Optional[str] = None
    partial: bool = False

    def __post_init__(self):
        if isinstance(self.role, str) and not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not isinstance(self.segments, tuple):
            object.__setattr__(self, "segments", tuple(self.segments))

    @classmethod
    def from_text(
        cls,
        role: Union[Role, str],
        text: str,
        parent_id: Optional[str] = None,
    ) -> 'Message':
        """Create a single-text-segment message."""
        return cls(role=Role(role), segments=(TextSegment(text),), parent_id=parent_id)

    @property
    def text(self) -> str:
        """Concatenated prose of all text segments."""
        return "".join(s.text for s in self.segments if isinstance(s, TextSegment))

    @property
    def tool_calls(self) -> List[ToolCallSegment]:
        return [s for s in self.segments if isinstance(s, ToolCallSegment)]

    @property
    def tool_results(self) -> List[ToolResultSegment]:
        return [s for s in self.segments if isinstance(s, ToolResultSegment)]


# ==================== Tools ====================

PARAMETER_TYPES = ("string", "integer", "number", "boolean", "array", "object", "any")


class ToolSource(str, Enum):
    """Where a tool's handler lives. Also the dispatcher's resolution order."""
    BUILTIN = "builtin"
    PLUGIN = "plugin"
    MCP = "mcp"


@dataclass(frozen=True)
class ParameterSpec:
    """Schema of a single tool parameter."""
    type: str = "any"
    required: bool = False
    default: Any = None
    enum: Optional[Tuple[Any, ...]] = None
    description: str = ""

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {}
        if self.type != "any":
            schema["type"] = self.type
        if self.description:
            schema["description"] = self.description
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass(frozen=True)
class ToolDefinition:
    """Provider-agnostic tool declaration plus its handler binding.

    Attributes:
        name: Unique tool name within the active tool set.
        description: What the tool does, shown to the model.
        parameters: Mapping of parameter name to ParameterSpec.
        handler: Callable receiving the validated argument dict. When
            ``cancellable`` is True it also receives the turn's CancelToken.
        source: Handler kind (builtin, plugin or MCP proxy).
        owner: Plugin name or MCP server name that registered the tool.
        cancellable: Whether the handler accepts a cancel token.
    """
    name: str
    description: str = ""
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    handler: Optional[Callable[..., Any]] = field(default=None, compare=False)
    source: ToolSource = ToolSource.PLUGIN
    owner: Optional[str] = None
    cancellable: bool = False

    def to_json_schema(self) -> Dict[str, Any]:
        """JSON Schema object for the parameters, as providers expect it."""
        return {
            "type": "object",
            "properties": {
                pname: spec.to_json_schema() for pname, spec in self.parameters.items()
            },
            "required": [pname for pname, spec in self.parameters.items() if spec.required],
        }

    @classmethod
    def from_json_schema(
        cls,
        name: str,
        description: str,
        schema: Optional[Dict[str, Any]],
        **kwargs: Any,
    ) -> 'ToolDefinition':
        """Build a definition from a JSON Schema ``object`` (e.g. an MCP inputSchema).

        Nested schemas collapse to their top-level type; anything without a
        recognised type accepts any value.
        """
        schema = schema or {}
        required = set(schema.get("required") or [])
        params: Dict[str, ParameterSpec] = {}
        for pname, pschema in (schema.get("properties") or {}).items():
            pschema = pschema or {}
            ptype = pschema.get("type", "any")
            if isinstance(ptype, list):
                non_null = [t for t in ptype if t != "null"]
                ptype = non_null[0] if len(non_null) == 1 else "any"
            if ptype not in PARAMETER_TYPES:
                ptype = "any"
            enum = pschema.get("enum")
            params[pname] = ParameterSpec(
                type=ptype,
                required=pname in required,
                default=pschema.get("default"),
                enum=tuple(enum) if enum is not None else None,
                description=pschema.get("description", ""),
            )
        return cls(name=name, description=description, parameters=params, **kwargs)


# ==================== Streaming ====================

@dataclass
class TokenUsage:
    """Token usage statistics reported by a provider."""
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: 'TokenUsage') -> None:
        self.prompt_tokens += other.prompt_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


class FinishReason(str, Enum):
    """Reason why the model stopped generating."""
    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    SAFETY = "safety"
    ERROR = "error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ChunkType(str, Enum):
    """Kinds of raw chunks a provider stream produces."""
    TEXT = "text"
    TOOL_CALL = "tool_call"              # complete structured call
    TOOL_CALL_START = "tool_call_start"  # incremental structured call
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_CALL_END = "tool_call_end"
    USAGE = "usage"
    DONE = "done"                        # completion marker
    PARTIAL = "partial"                  # stream cut short by cancellation


@dataclass
class StreamChunk:
    """One raw unit of a streamed completion."""
    type: ChunkType
    text: str = ""
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[FinishReason] = None

    @classmethod
    def text_chunk(cls, text: str) -> 'StreamChunk':
        return cls(ChunkType.TEXT, text=text)

    @classmethod
    def tool_call(cls, call_id: str, name: str, arguments: Optional[Dict[str, Any]] = None) -> 'StreamChunk':
        return cls(ChunkType.TOOL_CALL, call_id=call_id, name=name, arguments=arguments or {})

    @classmethod
    def tool_call_start(cls, call_id: str, name: str) -> 'StreamChunk':
        return cls(ChunkType.TOOL_CALL_START, call_id=call_id, name=name)

    @classmethod
    def tool_call_delta(cls, call_id: str, json_fragment: str) -> 'StreamChunk':
        return cls(ChunkType.TOOL_CALL_DELTA, call_id=call_id, text=json_fragment)

    @classmethod
    def tool_call_end(cls, call_id: str) -> 'StreamChunk':
        return cls(ChunkType.TOOL_CALL_END, call_id=call_id)

    @classmethod
    def usage_chunk(cls, usage: TokenUsage) -> 'StreamChunk':
        return cls(ChunkType.USAGE, usage=usage)

    @classmethod
    def done(
        cls,
        finish_reason: FinishReason = FinishReason.STOP,
        usage: Optional[TokenUsage] = None,
    ) -> 'StreamChunk':
        return cls(ChunkType.DONE, finish_reason=finish_reason, usage=usage)

    @classmethod
    def partial(cls) -> 'StreamChunk':
        return cls(ChunkType.PARTIAL, finish_reason=FinishReason.CANCELLED)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capability flags a provider declares at registration."""
    streaming: bool = True
    tool_calls: bool = True
    vision: bool = False
    max_context: int = 0


# ==================== Cancellation ====================

class CancelledException(Exception):
    """Raised when an operation is cancelled via CancelToken."""

    condition = "cancelled"

    def __init__(self, message: str = "Operation was cancelled"):
        self.message = message
        super().__init__(self.message)


class CancelToken:
    """Thread-safe cancellation token threaded from ``SessionManager.cancel``.

    Supports polling (``is_cancelled``), blocking waits (``wait``) and
    callbacks (``on_cancel``) so that blocking reads can be interrupted by
    closing their connection.
    """

    def __init__(self):
        self._cancelled = False
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation. Idempotent; callbacks run once."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        self._event.set()

        # Outside the lock: callbacks may call back into the token
        for callback in callbacks:
            self._invoke(callback)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledException()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback; invoked immediately if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._invoke(callback)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:
            logger.debug("Cancel callback %r failed: %s", callback, exc)
