"""Provider adapter: retry, pacing and cancellation around a provider stream."""

import logging
from typing import Iterator, List, Optional

from ...errors import ProviderError
from ...retry_utils import RequestPacer, RetryCallback, RetryConfig, RetryStats, iter_with_retry
from ...trace import provider_trace
from .base import ModelProviderPlugin, StreamOptions
from .types import (
    CancelledException,
    CancelToken,
    ChunkType,
    Message,
    ProviderCapabilities,
    StreamChunk,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


class ProviderAdapter:
    """Uniform streaming surface over a registered provider.

    Wraps ``provider.stream`` with:
    - tool filtering for providers without tool-call support
    - request pacing (shared ``RequestPacer``)
    - retry with backoff, only until the first chunk is delivered
    - cancellation: a cancelled stream is closed and ends with a PARTIAL chunk
    - translation of unexpected exceptions into terminal ``ProviderError``
    """

    def __init__(
        self,
        provider: ModelProviderPlugin,
        retry_config: Optional[RetryConfig] = None,
        pacer: Optional[RequestPacer] = None,
        on_retry: Optional[RetryCallback] = None,
    ):
        self._provider = provider
        self._retry_config = retry_config or RetryConfig()
        self._pacer = pacer or RequestPacer()
        self._on_retry = on_retry
        self.last_stats: Optional[RetryStats] = None

    @property
    def name(self) -> str:
        return self._provider.name

    @property
    def provider(self) -> ModelProviderPlugin:
        return self._provider

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._provider.capabilities

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    @retry_config.setter
    def retry_config(self, config: RetryConfig) -> None:
        self._retry_config = config

    def stream(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[ToolDefinition]] = None,
        options: Optional[StreamOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[StreamChunk]:
        """Stream a completion; see ``ModelProviderPlugin.stream``.

        Raises:
            ProviderError: Terminal failure, or retries exhausted.
        """
        if tools and not self.capabilities.tool_calls:
            logger.debug("Provider %s has no tool-call support; dropping %d tools",
                         self.name, len(tools))
            tools = None

        if cancel_token is not None and cancel_token.is_cancelled:
            yield StreamChunk.partial()
            return

        def open_stream() -> Iterator[StreamChunk]:
            self._pacer.pace(cancel_token)
            provider_trace(self.name, f"stream model={model} messages={len(messages)} "
                                      f"tools={len(tools) if tools else 0}")
            return self._provider.stream(model, messages, tools, options, cancel_token)

        self.last_stats = RetryStats()
        chunks = iter_with_retry(
            open_stream,
            config=self._retry_config,
            context=f"{self.name}.stream",
            on_retry=self._on_retry,
            cancel_token=cancel_token,
            stats=self.last_stats,
        )
        try:
            for chunk in chunks:
                yield chunk
                if chunk.type in (ChunkType.PARTIAL, ChunkType.DONE):
                    return
                if cancel_token is not None and cancel_token.is_cancelled:
                    yield StreamChunk.partial()
                    return
        except CancelledException:
            yield StreamChunk.partial()
        except ProviderError as exc:
            if cancel_token is not None and cancel_token.is_cancelled:
                yield StreamChunk.partial()
                return
            provider_trace(self.name, f"stream failed: {exc}")
            raise
        except Exception as exc:
            # A closed connection surfaces as an arbitrary SDK error
            if cancel_token is not None and cancel_token.is_cancelled:
                yield StreamChunk.partial()
                return
            provider_trace(self.name, f"stream failed: {exc}", include_traceback=True)
            raise ProviderError(
                f"{type(exc).__name__}: {exc}", provider=self.name, retryable=False
            ) from exc
        finally:
            chunks.close()
