"""Model provider plugins.

Re-exports the provider-agnostic types and the provider protocol, and loads
bundled providers by name. Each provider subpackage exposes a
``create_provider()`` factory.

Usage:
    from conductor.plugins.model_provider import load_provider

    provider = load_provider("anthropic", ProviderConfig(api_key="sk-ant-..."))
"""

import importlib
import importlib.util
import logging
import pkgutil
from pathlib import Path
from typing import List, Optional

from .base import ModelProviderPlugin, ProviderConfig, StreamOptions
from .types import (
    CancelledException,
    CancelToken,
    ChunkType,
    CodeBlockSegment,
    FinishReason,
    Message,
    ParameterSpec,
    ProviderCapabilities,
    Role,
    Segment,
    StreamChunk,
    TextSegment,
    TokenUsage,
    ToolCallSegment,
    ToolDefinition,
    ToolResultSegment,
    ToolSource,
)

logger = logging.getLogger(__name__)

_INTERNAL_MODULES = ("base", "types", "adapter", "tests")


def discover_providers(provider_dir: Optional[Path] = None) -> List[str]:
    """List bundled provider names (subpackages with a ``create_provider()``)."""
    if provider_dir is None:
        provider_dir = Path(__file__).parent

    names = []
    for _finder, name, ispkg in pkgutil.iter_modules([str(provider_dir)]):
        if not ispkg or name.startswith('_') or name in _INTERNAL_MODULES:
            continue
        try:
            module = importlib.import_module(f".{name}", package=__name__)
        except ImportError as exc:
            logger.warning("Cannot import provider '%s': %s", name, exc)
            continue
        if hasattr(module, "create_provider"):
            names.append(name)
    return sorted(names)


def load_provider(name: str, config: Optional[ProviderConfig] = None) -> ModelProviderPlugin:
    """Create and initialize a bundled provider.

    Raises:
        ValueError: No provider with that name, or it lacks the protocol shape.
    """
    known = not name.startswith("_") and name not in _INTERNAL_MODULES
    if not known or importlib.util.find_spec(f".{name}", __name__) is None:
        raise ValueError(f"Model provider '{name}' not found. Available: {discover_providers()}")
    module = importlib.import_module(f".{name}", package=__name__)

    factory = getattr(module, "create_provider", None)
    if factory is None:
        raise ValueError(f"Model provider '{name}' has no create_provider() factory")

    provider = factory()
    if not isinstance(provider, ModelProviderPlugin):
        raise ValueError(f"Model provider '{name}' does not implement ModelProviderPlugin")

    provider.initialize(config)
    return provider


__all__ = [
    "CancelledException",
    "CancelToken",
    "ChunkType",
    "CodeBlockSegment",
    "FinishReason",
    "Message",
    "ModelProviderPlugin",
    "ParameterSpec",
    "ProviderCapabilities",
    "ProviderConfig",
    "Role",
    "Segment",
    "StreamChunk",
    "StreamOptions",
    "TextSegment",
    "TokenUsage",
    "ToolCallSegment",
    "ToolDefinition",
    "ToolResultSegment",
    "ToolSource",
    "discover_providers",
    "load_provider",
]
