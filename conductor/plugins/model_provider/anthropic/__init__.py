"""Anthropic Claude provider plugin.

Usage:
    from conductor.plugins.model_provider.anthropic import AnthropicProvider

    provider = AnthropicProvider()
    provider.initialize(ProviderConfig(api_key='sk-ant-api03-...'))
"""

from .errors import (
    APIKeyInvalidError,
    APIKeyNotFoundError,
    ContextLimitError,
    ModelNotFoundError,
    OverloadedError,
    RateLimitError,
)
from .provider import AnthropicProvider, create_provider

__all__ = [
    "AnthropicProvider",
    "create_provider",
    "APIKeyInvalidError",
    "APIKeyNotFoundError",
    "ContextLimitError",
    "ModelNotFoundError",
    "OverloadedError",
    "RateLimitError",
]
