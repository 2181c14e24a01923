"""Ollama provider plugin (local models via the Anthropic-compatible API)."""

from .provider import OllamaConnectionError, OllamaProvider, create_provider

__all__ = ["OllamaConnectionError", "OllamaProvider", "create_provider"]
