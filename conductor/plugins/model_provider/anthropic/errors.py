"""Anthropic-specific provider errors.

Each maps onto the core provider taxonomy so the adapter's retry policy can
tell transient failures from terminal ones.
"""

from typing import List, Optional

from ....errors import ProviderAuthError, ProviderRequestError, ProviderTransientError


class APIKeyNotFoundError(ProviderAuthError):
    """Raised when no API key is found."""

    def __init__(self, checked_locations: Optional[List[str]] = None):
        self.checked_locations = checked_locations or []
        locations = ", ".join(self.checked_locations) if self.checked_locations else "environment"
        super().__init__(
            f"Anthropic API key not found.\n"
            f"Checked: {locations}\n\n"
            f"To fix this:\n"
            f"  1. Get an API key from https://console.anthropic.com/\n"
            f"  2. Set ANTHROPIC_API_KEY environment variable:\n"
            f"     export ANTHROPIC_API_KEY='sk-ant-...'",
            provider="anthropic",
        )


class APIKeyInvalidError(ProviderAuthError):
    """Raised when the API key is rejected."""

    def __init__(self, key_prefix: Optional[str] = None, original_error: Optional[str] = None):
        self.key_prefix = key_prefix
        self.original_error = original_error
        message = "Anthropic API key rejected"
        if key_prefix:
            message += f"\nKey prefix: {key_prefix}..."
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(message, provider="anthropic", status_code=401)


class RateLimitError(ProviderTransientError):
    def __init__(self, retry_after: Optional[float] = None, original_error: Optional[str] = None):
        message = "Anthropic API rate limit exceeded."
        if retry_after:
            message += f" Retry after {retry_after} seconds."
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(message, provider="anthropic", status_code=429,
                         retry_after=retry_after, rate_limit=True)


class OverloadedError(ProviderTransientError):
    """Raised for overloaded (529), 5xx, timeout and connection failures."""

    def __init__(self, status_code: Optional[int] = None, original_error: Optional[str] = None):
        message = "Anthropic API is temporarily unavailable."
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(message, provider="anthropic", status_code=status_code)


class ContextLimitError(ProviderRequestError):
    def __init__(self, model: str, original_error: Optional[str] = None):
        self.model = model
        message = (f"Context limit exceeded for model {model}.\n"
                   f"Reduce conversation history or use a model with a larger context.")
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(message, provider="anthropic", status_code=400)


class ModelNotFoundError(ProviderRequestError):
    def __init__(self, model: str, original_error: Optional[str] = None):
        self.model = model
        message = f"Model '{model}' not found."
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(message, provider="anthropic", status_code=404)
