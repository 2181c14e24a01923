"""Environment variable resolution for Anthropic provider."""

import os
from typing import List, Optional


DEFAULT_MAX_TOKENS = 8192


def resolve_api_key() -> Optional[str]:
    """Resolve Anthropic API key from ANTHROPIC_API_KEY."""
    return os.environ.get("ANTHROPIC_API_KEY") or None


def get_checked_credential_locations() -> List[str]:
    return ["ANTHROPIC_API_KEY"]


def resolve_max_tokens() -> int:
    """Output token cap from CONDUCTOR_ANTHROPIC_MAX_TOKENS (default: 8192)."""
    val = os.environ.get("CONDUCTOR_ANTHROPIC_MAX_TOKENS", str(DEFAULT_MAX_TOKENS))
    try:
        return int(val)
    except ValueError:
        return DEFAULT_MAX_TOKENS
