"""Ollama settings read from the environment.

The server is local, so the settings are an address and a context size
instead of credentials.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


DEFAULT_OLLAMA_HOST = "http://localhost:11434"


def resolve_host() -> str:
    """OLLAMA_HOST without a trailing slash, or the local default."""
    return (os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST).rstrip("/")


def resolve_context_length() -> Optional[int]:
    """Positive integer from OLLAMA_CONTEXT_LENGTH; None when unset or unusable."""
    raw = os.environ.get("OLLAMA_CONTEXT_LENGTH", "").strip()
    if not raw:
        return None
    if not raw.isdigit() or int(raw) == 0:
        logger.warning("Ignoring OLLAMA_CONTEXT_LENGTH=%r: not a positive integer", raw)
        return None
    return int(raw)
