"""Base protocol for Model Provider plugins.

A model provider encapsulates all SDK-specific logic for talking to one AI
backend. The core only ever sees the streaming surface defined here: a
provider converts conversation history and tool definitions to its own wire
format and yields provider-agnostic ``StreamChunk`` objects back.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from .types import (
    CancelToken,
    Message,
    ProviderCapabilities,
    StreamChunk,
    ToolDefinition,
)


@dataclass
class ProviderConfig:
    """Configuration for model provider initialization.

    Attributes:
        api_key: API key for authentication (if applicable).
        base_url: Override for the service endpoint.
        extra: Provider-specific additional configuration.
    """
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamOptions:
    """Per-request generation options.

    Attributes:
        system_instruction: System prompt for the model.
        max_tokens: Output token cap; the provider default when None.
        temperature: Sampling temperature; the provider default when None.
        extra: Provider-specific request options.
    """
    system_instruction: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ModelProviderPlugin(Protocol):
    """Protocol for Model Provider plugins.

    Example implementation:
        class EchoProvider:
            name = "echo"
            capabilities = ProviderCapabilities(tool_calls=False)

            def initialize(self, config=None): ...
            def shutdown(self): ...
            def list_models(self, prefix=None): return ["echo-1"]

            def stream(self, model, messages, tools, options, cancel_token=None):
                yield StreamChunk.text_chunk(messages[-1].text)
                yield StreamChunk.done()
    """

    @property
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'anthropic', 'ollama')."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Capability flags, fixed once the provider is registered."""
        ...

    # ==================== Lifecycle ====================

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Initialize the provider with configuration and credentials."""
        ...

    def shutdown(self) -> None:
        """Release any resources held by the provider."""
        ...

    def refresh_credentials(self, config: Optional[ProviderConfig] = None) -> None:
        """Re-resolve credentials and rebuild the client.

        The only mutation allowed after registration.
        """
        ...

    def list_models(self, prefix: Optional[str] = None) -> List[str]:
        """List models this provider can serve."""
        ...

    # ==================== Streaming ====================

    def stream(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[ToolDefinition]],
        options: Optional[StreamOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[StreamChunk]:
        """Stream a completion for the given conversation.

        The iterator ends with a DONE chunk carrying the finish reason and
        usage, or with a PARTIAL chunk when ``cancel_token`` fired mid-stream.
        Failures are raised as ``ProviderError`` subclasses so the adapter
        can decide whether to retry.

        Args:
            model: Model identifier.
            messages: Full conversation history, oldest first. ``system``
                role messages are condition records and are not sent.
            tools: Tool definitions to expose, or None.
            options: Generation options.
            cancel_token: Token that interrupts the stream when cancelled.
        """
        ...
