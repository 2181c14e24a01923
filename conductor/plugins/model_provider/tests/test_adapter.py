"""Tests for ProviderAdapter."""

import pytest

from ....errors import ProviderAuthError, ProviderError, ProviderTransientError
from ....retry_utils import RequestPacer, RetryConfig
from ....tests.fakes import ScriptedProvider, text_response
from ..adapter import ProviderAdapter
from ..types import (
    CancelToken,
    ChunkType,
    Message,
    ProviderCapabilities,
    StreamChunk,
    ToolDefinition,
)

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)


def _adapter(provider, **kwargs):
    kwargs.setdefault("retry_config", FAST_RETRY)
    kwargs.setdefault("pacer", RequestPacer(0))
    return ProviderAdapter(provider, **kwargs)


def _history():
    return [Message.from_text("user", "hello")]


def _types(chunks):
    return [c.type for c in chunks]


class TestStreaming:

    def test_passes_chunks_through(self):
        provider = ScriptedProvider([text_response("Hi there")])

        chunks = list(_adapter(provider).stream("m", _history()))

        assert _types(chunks) == [ChunkType.TEXT, ChunkType.DONE]
        assert chunks[0].text == "Hi there"
        assert provider.calls[0]["model"] == "m"

    def test_stops_after_done(self):
        provider = ScriptedProvider([[StreamChunk.done(), StreamChunk.text_chunk("late")]])

        chunks = list(_adapter(provider).stream("m", _history()))

        assert _types(chunks) == [ChunkType.DONE]

    def test_forwards_tools(self):
        provider = ScriptedProvider([text_response("ok")])
        tools = [ToolDefinition(name="search", handler=print)]

        list(_adapter(provider).stream("m", _history(), tools=tools))

        assert provider.calls[0]["tools"] == ["search"]

    def test_drops_tools_without_tool_support(self):
        provider = ScriptedProvider([text_response("ok")],
                                    capabilities=ProviderCapabilities(tool_calls=False))
        tools = [ToolDefinition(name="search", handler=print)]

        list(_adapter(provider).stream("m", _history(), tools=tools))

        assert provider.calls[0]["tools"] == []

    def test_exposes_provider(self):
        provider = ScriptedProvider(name="acme")
        adapter = _adapter(provider)

        assert adapter.name == "acme"
        assert adapter.provider is provider
        assert adapter.capabilities is provider.capabilities


class TestRetry:

    def test_transient_failure_before_first_chunk_is_retried(self):
        provider = ScriptedProvider([
            ProviderTransientError("503 service unavailable", status_code=503),
            text_response("recovered"),
        ])
        retries = []
        adapter = _adapter(provider, on_retry=lambda msg, attempt, total, delay: retries.append(attempt))

        chunks = list(adapter.stream("m", _history()))

        assert chunks[0].text == "recovered"
        assert len(provider.calls) == 2
        assert retries == [1]
        assert adapter.last_stats.attempts == 2
        assert adapter.last_stats.transient_errors == 1

    def test_retries_exhausted(self):
        provider = ScriptedProvider([ProviderTransientError("rate limit", rate_limit=True)])
        adapter = _adapter(provider, on_retry=lambda *args: None)

        with pytest.raises(ProviderTransientError):
            list(adapter.stream("m", _history()))

        assert len(provider.calls) == 3
        assert adapter.last_stats.rate_limit_errors == 3

    def test_auth_error_is_not_retried(self):
        provider = ScriptedProvider([ProviderAuthError("bad key", provider="scripted")])

        with pytest.raises(ProviderAuthError):
            list(_adapter(provider).stream("m", _history()))

        assert len(provider.calls) == 1

    def test_failure_after_first_chunk_is_not_retried(self):
        def fails_midway(cancel_token):
            yield StreamChunk.text_chunk("Half")
            raise ProviderTransientError("connection reset")

        provider = ScriptedProvider([fails_midway, text_response("again")])
        received = []

        with pytest.raises(ProviderTransientError):
            for chunk in _adapter(provider).stream("m", _history()):
                received.append(chunk)

        assert [c.text for c in received] == ["Half"]
        assert len(provider.calls) == 1

    def test_unexpected_exception_becomes_provider_error(self):
        provider = ScriptedProvider([ValueError("unexpected payload shape")])

        with pytest.raises(ProviderError) as exc_info:
            list(_adapter(provider).stream("m", _history()))

        assert exc_info.value.retryable is False
        assert exc_info.value.provider == "scripted"
        assert "ValueError" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_retry_config_can_be_replaced(self):
        adapter = _adapter(ScriptedProvider())
        config = RetryConfig(max_attempts=1)

        adapter.retry_config = config

        assert adapter.retry_config is config


class TestCancellation:

    def test_cancelled_before_start(self):
        provider = ScriptedProvider([text_response("never")])
        token = CancelToken()
        token.cancel()

        chunks = list(_adapter(provider).stream("m", _history(), cancel_token=token))

        assert _types(chunks) == [ChunkType.PARTIAL]
        assert provider.calls == []

    def test_cancel_mid_stream_ends_with_partial(self):
        closed = []

        def long_answer(cancel_token):
            try:
                yield StreamChunk.text_chunk("one ")
                yield StreamChunk.text_chunk("two ")
                yield StreamChunk.done()
            finally:
                closed.append(True)

        provider = ScriptedProvider([long_answer])
        token = CancelToken()
        received = []

        for chunk in _adapter(provider).stream("m", _history(), cancel_token=token):
            received.append(chunk)
            token.cancel()

        assert _types(received) == [ChunkType.TEXT, ChunkType.PARTIAL]
        assert closed == [True]

    def test_error_after_cancel_is_reported_as_partial(self):
        token = CancelToken()

        def interrupted(cancel_token):
            yield StreamChunk.text_chunk("Hel")
            cancel_token.cancel()
            raise OSError("connection closed")

        provider = ScriptedProvider([interrupted])

        chunks = list(_adapter(provider).stream("m", _history(), cancel_token=token))

        assert _types(chunks)[-1] == ChunkType.PARTIAL
