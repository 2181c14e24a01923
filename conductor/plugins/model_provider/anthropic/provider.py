"""Anthropic Claude provider implementation.

Streams completions through the Anthropic Messages API and translates the
SDK's stream events into conductor StreamChunks.

Authentication:
- API key only; set ANTHROPIC_API_KEY or pass it via ProviderConfig
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

import anthropic

from ....errors import ProviderError, ProviderRequestError
from ....retry_utils import get_retry_after
from ....trace import provider_trace
from ..base import ProviderConfig, StreamOptions
from ..types import (
    CancelToken,
    Message,
    ProviderCapabilities,
    StreamChunk,
    ToolDefinition,
)
from .converters import StreamTranslator, messages_to_anthropic, tools_to_anthropic
from .env import get_checked_credential_locations, resolve_api_key, resolve_max_tokens
from .errors import (
    APIKeyInvalidError,
    APIKeyNotFoundError,
    ContextLimitError,
    ModelNotFoundError,
    OverloadedError,
    RateLimitError,
)

logger = logging.getLogger(__name__)


DEFAULT_CONTEXT_LIMIT = 200_000

KNOWN_MODELS = [
    "claude-opus-4-5-20251101",
    "claude-sonnet-4-5-20250929",
    "claude-sonnet-4-20250514",
    "claude-haiku-4-5-20251001",
    "claude-3-7-sonnet-20250219",
    "claude-3-5-haiku-20241022",
]


class AnthropicProvider:
    """Anthropic Claude provider.

    Usage:
        provider = AnthropicProvider()
        provider.initialize(ProviderConfig(
            api_key='sk-ant-...',  # Or set ANTHROPIC_API_KEY env var
            extra={'enable_caching': True},
        ))
        for chunk in provider.stream('claude-sonnet-4-20250514', messages, tools):
            ...
    """

    def __init__(self):
        self._client: Optional[anthropic.Anthropic] = None
        self._api_key: Optional[str] = None
        self._base_url: Optional[str] = None
        self._max_tokens: int = resolve_max_tokens()
        self._enable_caching: bool = False

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            streaming=True,
            tool_calls=True,
            vision=True,
            max_context=DEFAULT_CONTEXT_LIMIT,
        )

    # ==================== Lifecycle ====================

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Initialize the provider with credentials.

        Args:
            config: Configuration with authentication details.
                - api_key: Anthropic API key (or set ANTHROPIC_API_KEY)
                - base_url: Optional endpoint override
                - extra['max_tokens']: Output token cap
                - extra['enable_caching']: Prompt caching (default: False)

        Raises:
            APIKeyNotFoundError: No API key found.
        """
        if config is None:
            config = ProviderConfig()

        self._api_key = config.api_key or resolve_api_key()
        if not self._api_key:
            raise APIKeyNotFoundError(checked_locations=get_checked_credential_locations())

        self._base_url = config.base_url
        self._max_tokens = int(config.extra.get("max_tokens", self._max_tokens))
        self._enable_caching = bool(config.extra.get("enable_caching", False))
        self._client = self._create_client()

    def _create_client(self) -> anthropic.Anthropic:
        kwargs: Dict[str, Any] = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        # Retries are owned by the adapter
        kwargs["max_retries"] = 0
        return anthropic.Anthropic(**kwargs)

    def refresh_credentials(self, config: Optional[ProviderConfig] = None) -> None:
        """Re-resolve the API key and rebuild the client."""
        self.initialize(config)

    def shutdown(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def list_models(self, prefix: Optional[str] = None) -> List[str]:
        """Known Claude model IDs (the API key is not consulted)."""
        models = list(KNOWN_MODELS)
        if prefix:
            models = [m for m in models if m.startswith(prefix)]
        return sorted(models)

    # ==================== Streaming ====================

    def _build_api_kwargs(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[ToolDefinition]],
        options: Optional[StreamOptions],
    ) -> Dict[str, Any]:
        options = options or StreamOptions()
        api_messages = messages_to_anthropic(messages)
        if not api_messages:
            raise ProviderRequestError("No messages to send", provider=self.name)

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": api_messages,
            "max_tokens": options.max_tokens or self._max_tokens,
        }

        if options.system_instruction:
            if self._enable_caching:
                kwargs["system"] = [{
                    "type": "text",
                    "text": options.system_instruction,
                    "cache_control": {"type": "ephemeral"},
                }]
            else:
                kwargs["system"] = options.system_instruction

        anthropic_tools = tools_to_anthropic(tools)
        if anthropic_tools:
            if self._enable_caching:
                anthropic_tools[-1]["cache_control"] = {"type": "ephemeral"}
            kwargs["tools"] = anthropic_tools

        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        kwargs.update(options.extra)
        return kwargs

    def stream(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[ToolDefinition]],
        options: Optional[StreamOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[StreamChunk]:
        """Stream a completion from the Messages API.

        Cancelling the token closes the HTTP stream, which unblocks the
        pending read; the iterator then ends with a PARTIAL chunk.
        """
        if self._client is None:
            raise ProviderRequestError("Provider not initialized. Call initialize() first.",
                                       provider=self.name)

        kwargs = self._build_api_kwargs(model, messages, tools, options)
        translator = StreamTranslator()

        try:
            with self._client.messages.stream(**kwargs) as stream:
                if cancel_token is not None:
                    cancel_token.on_cancel(stream.close)
                for event in stream:
                    if cancel_token is not None and cancel_token.is_cancelled:
                        yield StreamChunk.partial()
                        return
                    for chunk in translator.feed(event):
                        yield chunk
        except Exception as exc:
            if cancel_token is not None and cancel_token.is_cancelled:
                yield StreamChunk.partial()
                return
            provider_trace(self.name, f"stream error: {type(exc).__name__}: {exc}")
            self._handle_api_error(exc, model)

        provider_trace(self.name, f"stream done: finish={translator.finish_reason.value} "
                                  f"tokens={translator.usage.total_tokens}")
        yield translator.finish()

    # ==================== Errors ====================

    def _handle_api_error(self, error: Exception, model: str) -> None:
        """Convert an SDK exception into a ProviderError subclass and raise it."""
        if isinstance(error, ProviderError):
            raise error

        original = str(error)
        key_prefix = self._api_key[:10] if self._api_key else None

        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            raise APIKeyInvalidError(key_prefix=key_prefix, original_error=original) from error

        if isinstance(error, anthropic.RateLimitError):
            raise RateLimitError(retry_after=get_retry_after(error), original_error=original) from error

        if isinstance(error, anthropic.APIConnectionError):
            # Includes APITimeoutError
            raise OverloadedError(original_error=original) from error

        if isinstance(error, anthropic.NotFoundError):
            raise ModelNotFoundError(model, original_error=original) from error

        if isinstance(error, anthropic.APIStatusError):
            status = error.status_code
            if status >= 500:
                raise OverloadedError(status_code=status, original_error=original) from error
            lower = original.lower()
            if "prompt is too long" in lower or "context" in lower:
                raise ContextLimitError(model, original_error=original) from error
            raise ProviderRequestError(original, provider=self.name, status_code=status) from error

        # Errors raised mid-stream arrive without a status class
        lower = original.lower()
        if "overloaded" in lower or "529" in lower:
            raise OverloadedError(status_code=529, original_error=original) from error
        if "rate" in lower and "limit" in lower:
            raise RateLimitError(original_error=original) from error
        raise ProviderError(original, provider=self.name, retryable=False) from error


def create_provider() -> AnthropicProvider:
    """Factory function for plugin discovery."""
    return AnthropicProvider()
