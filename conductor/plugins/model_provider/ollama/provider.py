"""Ollama provider implementation.

Reaches local models through Ollama's Anthropic-compatible Messages API
(Ollama v0.14.0+). Everything except client construction, model listing and
error interpretation is inherited from AnthropicProvider.

Environment variables:
    OLLAMA_HOST: Ollama server URL (default: http://localhost:11434)
    OLLAMA_CONTEXT_LENGTH: Override context length for models
"""

import logging
from typing import List, Optional

import anthropic
import requests

from ....errors import ProviderRequestError, ProviderTransientError
from ..anthropic.provider import AnthropicProvider
from ..base import ProviderConfig
from ..types import ProviderCapabilities
from .env import DEFAULT_OLLAMA_HOST, resolve_context_length, resolve_host

logger = logging.getLogger(__name__)


# Most models support at least 8K, many 32K+
DEFAULT_CONTEXT_LIMIT = 32768


class OllamaConnectionError(ProviderTransientError):
    """Failed to connect to the Ollama server."""

    def __init__(self, host: str, message: str = ""):
        self.host = host
        detail = f": {message}" if message else ""
        super().__init__(
            f"Cannot connect to Ollama server at {host}{detail}\n"
            f"Make sure Ollama is running: ollama serve",
            provider="ollama",
        )


class OllamaProvider(AnthropicProvider):
    """Ollama provider using the Anthropic-compatible API.

    No API key is needed; the SDK still requires one, so a dummy is sent.
    """

    def __init__(self):
        super().__init__()
        self._host: str = DEFAULT_OLLAMA_HOST
        self._context_length_override: Optional[int] = None

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            streaming=True,
            tool_calls=True,
            vision=False,
            max_context=self._context_length_override or DEFAULT_CONTEXT_LIMIT,
        )

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Initialize the provider and verify the server is reachable.

        Args:
            config: Optional configuration.
                - base_url or extra['host']: Override OLLAMA_HOST
                - extra['context_length']: Override context length

        Raises:
            OllamaConnectionError: The server did not answer.
        """
        if config is None:
            config = ProviderConfig()

        host = config.base_url or config.extra.get("host") or resolve_host()
        self._host = host.rstrip("/")
        self._context_length_override = (
            config.extra.get("context_length") or resolve_context_length()
        )
        self._max_tokens = int(config.extra.get("max_tokens", self._max_tokens))
        self._enable_caching = False  # not supported by Ollama
        self._api_key = "ollama"

        self._client = self._create_client()
        self._verify_connectivity()

    def _create_client(self) -> anthropic.Anthropic:
        # The SDK appends /v1/messages itself
        return anthropic.Anthropic(base_url=self._host, api_key="ollama", max_retries=0)

    def _verify_connectivity(self) -> None:
        try:
            response = requests.get(f"{self._host}/api/tags", timeout=5)
            response.raise_for_status()
        except requests.exceptions.ConnectionError:
            raise OllamaConnectionError(self._host)
        except requests.exceptions.Timeout:
            raise OllamaConnectionError(self._host, "Connection timed out")
        except requests.exceptions.RequestException as e:
            raise OllamaConnectionError(self._host, str(e))

    def list_models(self, prefix: Optional[str] = None) -> List[str]:
        """Models pulled into the local Ollama server."""
        try:
            response = requests.get(f"{self._host}/api/tags", timeout=10)
            response.raise_for_status()
            models = [model["name"] for model in response.json().get("models", [])]
        except requests.exceptions.RequestException as e:
            logger.warning("Failed to list Ollama models: %s", e)
            return []

        if prefix:
            models = [m for m in models if m.startswith(prefix)]
        return sorted(models)

    def _handle_api_error(self, error: Exception, model: str) -> None:
        """Ollama-specific interpretation, then the Anthropic mapping.

        A 404 from Ollama usually means the Anthropic endpoint is missing,
        not that the model is unknown.
        """
        error_str = str(error).lower()

        if "system memory" in error_str or "not enough memory" in error_str:
            raise ProviderRequestError(
                f"Ollama: not enough memory to load model '{model}'. "
                f"Try a smaller model or free memory.\nOriginal error: {error}",
                provider=self.name,
            ) from error

        if isinstance(error, anthropic.NotFoundError) or "page not found" in error_str:
            raise ProviderRequestError(
                f"Ollama returned 404. Either Ollama is older than 0.14.0 "
                f"(no Anthropic API) or model '{model}' is not pulled.\n"
                f"Original error: {error}",
                provider=self.name,
                status_code=404,
            ) from error

        super()._handle_api_error(error, model)


def create_provider() -> OllamaProvider:
    """Factory function for plugin discovery."""
    return OllamaProvider()
