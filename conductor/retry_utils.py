"""Retry utilities for transient provider errors.

Provides retry logic with exponential backoff for rate limit and transient
errors, a stream-aware variant that only retries before the first chunk is
delivered, and a request pacer for proactive rate limiting.

Usage:
    from conductor.retry_utils import with_retry, RetryConfig

    result, stats = with_retry(lambda: provider.count_tokens(text))

    config = RetryConfig(max_attempts=3, base_delay=2.0)
    for chunk in iter_with_retry(lambda: provider.stream(...), config=config):
        ...

Environment Variables:
    AI_RETRY_ATTEMPTS: Max attempts (default: 3)
    AI_RETRY_BASE_DELAY: Initial delay in seconds (default: 1.0)
    AI_RETRY_MAX_DELAY: Maximum delay in seconds (default: 30.0)
    AI_REQUEST_INTERVAL: Minimum seconds between requests (default: 0, disabled)
"""

import logging
import os
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from .errors import ProviderError
from .plugins.model_provider.types import CancelledException, CancelToken

logger = logging.getLogger(__name__)

# Signature: (message, attempt, max_attempts, delay) -> None
RetryCallback = Callable[[str, int, int, float], None]

T = TypeVar('T')

_RATE_LIMIT_PATTERNS = ("429", "too many requests", "rate limit", "rate_limit", "overloaded")
_INFRA_PATTERNS = (
    "500", "502", "503", "504", "529",
    "service unavailable", "temporarily unavailable", "internal error",
    "timed out", "timeout", "connection reset", "connection aborted",
)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, os.environ.get(name))
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, os.environ.get(name))
        return default


@dataclass
class RetryConfig:
    """Retry policy attached to a provider call.

    ``retryable`` overrides the default classification when set: it receives
    the exception and returns whether another attempt is allowed.
    """
    max_attempts: int = field(default_factory=lambda: _env_int("AI_RETRY_ATTEMPTS", 3))
    base_delay: float = field(default_factory=lambda: _env_float("AI_RETRY_BASE_DELAY", 1.0))
    max_delay: float = field(default_factory=lambda: _env_float("AI_RETRY_MAX_DELAY", 30.0))
    jitter_factor: float = 0.5  # delay multiplied by uniform [1-jitter, 1+jitter]
    retryable: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def is_retryable(self, exc: BaseException) -> bool:
        if self.retryable is not None:
            return bool(self.retryable(exc))
        return classify_error(exc)["transient"]


@dataclass
class RetryStats:
    """Statistics from a retry operation."""
    attempts: int = 0
    total_delay: float = 0.0
    rate_limit_errors: int = 0
    transient_errors: int = 0
    last_error: Optional[BaseException] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def classify_error(exc: BaseException) -> Dict[str, bool]:
    """Classify an exception as transient/rate-limit/infra.

    ``ProviderError`` subclasses carry their own classification. Timeouts and
    connection errors count as infra failures. Anything else falls back to
    message heuristics.
    """
    rate_like = False
    infra_like = False

    if isinstance(exc, ProviderError):
        if exc.retryable:
            rate_like = bool(getattr(exc, "rate_limit", False)) or exc.status_code == 429
            infra_like = not rate_like
    elif isinstance(exc, (TimeoutError, ConnectionError)):
        infra_like = True
    else:
        lower = str(exc).lower()
        if any(p in lower for p in _RATE_LIMIT_PATTERNS):
            rate_like = True
        if any(p in lower for p in _INFRA_PATTERNS):
            infra_like = True

    return {
        "transient": rate_like or infra_like,
        "rate_limit": rate_like,
        "infra": infra_like,
    }


def get_retry_after(exc: BaseException) -> Optional[float]:
    """Extract a retry-after hint (seconds) from an exception, if any."""
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        return float(retry_after)

    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value:
            try:
                return float(value)
            except ValueError:
                pass
    return None


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None
) -> float:
    """Exponential backoff with jitter, respecting a larger retry-after hint.

    Args:
        attempt: Attempt that just failed (1-indexed).
        config: Retry configuration.
        retry_after: Optional server hint in seconds.
    """
    exp_delay = config.base_delay * (2 ** (attempt - 1))
    capped_delay = min(config.max_delay, exp_delay)

    jitter = random.uniform(1 - config.jitter_factor, 1 + config.jitter_factor)
    delay = capped_delay * jitter

    if retry_after and retry_after > delay:
        delay = retry_after
    return delay


def interruptible_sleep(seconds: float, cancel_token: Optional[CancelToken] = None) -> None:
    """Sleep, waking early and raising CancelledException on cancellation."""
    if cancel_token is None:
        time.sleep(seconds)
        return
    if cancel_token.wait(timeout=seconds):
        raise CancelledException("Cancelled during retry backoff")


def _record_failure(
    exc: BaseException,
    attempt: int,
    config: RetryConfig,
    stats: RetryStats,
) -> Tuple[bool, Dict[str, bool]]:
    classification = classify_error(exc)
    stats.last_error = exc
    stats.errors.append({
        "attempt": attempt,
        "error": str(exc)[:200],
        "error_type": exc.__class__.__name__,
        **classification,
    })
    if classification["rate_limit"]:
        stats.rate_limit_errors += 1
    elif classification["infra"]:
        stats.transient_errors += 1
    retry = config.is_retryable(exc) and attempt < config.max_attempts
    return retry, classification


def _backoff(
    exc: BaseException,
    attempt: int,
    config: RetryConfig,
    stats: RetryStats,
    classification: Dict[str, bool],
    context: str,
    on_retry: Optional[RetryCallback],
    cancel_token: Optional[CancelToken],
) -> None:
    delay = calculate_backoff(attempt, config, get_retry_after(exc))
    stats.total_delay += delay

    tag = "rate-limit" if classification["rate_limit"] else "transient"
    exc_msg = str(exc)[:140].replace('\n', ' ')
    msg = (f"[AI Retry {attempt}/{config.max_attempts}] {context} ({tag}): "
           f"{exc.__class__.__name__}: {exc_msg} | sleep {delay:.2f}s")
    if on_retry:
        on_retry(msg, attempt, config.max_attempts, delay)
    else:
        logger.warning(msg)

    interruptible_sleep(delay, cancel_token)


def with_retry(
    fn: Callable[[], T],
    config: Optional[RetryConfig] = None,
    context: str = "API call",
    on_retry: Optional[RetryCallback] = None,
    cancel_token: Optional[CancelToken] = None,
) -> Tuple[T, RetryStats]:
    """Execute ``fn`` with automatic retry on transient errors.

    Args:
        fn: Function to execute (no arguments).
        config: Retry configuration (defaults read from environment).
        context: Description used in retry notices.
        on_retry: Optional callback for retry notices; the module logger is
            used when omitted.
        cancel_token: Aborts the backoff sleep with CancelledException.

    Returns:
        Tuple of (result, RetryStats).

    Raises:
        The last exception when retries are exhausted or the error is terminal.
    """
    if config is None:
        config = RetryConfig()
    stats = RetryStats()

    for attempt in range(1, config.max_attempts + 1):
        stats.attempts = attempt
        try:
            return fn(), stats
        except CancelledException:
            raise
        except Exception as exc:
            retry, classification = _record_failure(exc, attempt, config, stats)
            if not retry:
                raise
            _backoff(exc, attempt, config, stats, classification, context, on_retry, cancel_token)

    raise RuntimeError("Retry loop exited without result or exception")


def iter_with_retry(
    factory: Callable[[], Iterator[T]],
    config: Optional[RetryConfig] = None,
    context: str = "stream",
    on_retry: Optional[RetryCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    stats: Optional[RetryStats] = None,
) -> Iterator[T]:
    """Yield from ``factory()``, retrying only until the first item is delivered.

    Once an item has been yielded downstream, later failures propagate
    unchanged so retried attempts never duplicate content.
    """
    if config is None:
        config = RetryConfig()
    if stats is None:
        stats = RetryStats()

    for attempt in range(1, config.max_attempts + 1):
        stats.attempts = attempt
        delivered = False
        iterator = None
        try:
            iterator = iter(factory())
            for item in iterator:
                delivered = True
                yield item
            return
        except CancelledException:
            raise
        except Exception as exc:
            if delivered:
                raise
            retry, classification = _record_failure(exc, attempt, config, stats)
            if not retry:
                raise
            failure = exc
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        _backoff(failure, attempt, config, stats, classification, context, on_retry, cancel_token)


class RequestPacer:
    """Enforce a minimum interval between consecutive requests.

    Shared across threads; ``pace()`` blocks until the interval since the
    previous request has elapsed.
    """

    def __init__(self, interval: Optional[float] = None):
        if interval is None:
            interval = _env_float("AI_REQUEST_INTERVAL", 0.0)
        self.interval = max(0.0, interval)
        self._last_request = 0.0
        self._lock = threading.Lock()

    def pace(self, cancel_token: Optional[CancelToken] = None) -> float:
        """Wait for the pacing interval. Returns the time slept."""
        if self.interval <= 0:
            return 0.0
        with self._lock:
            now = time.monotonic()
            wait = max(0.0, self._last_request + self.interval - now)
            self._last_request = now + wait
        if wait > 0:
            interruptible_sleep(wait, cancel_token)
        return wait


__all__ = [
    'RequestPacer',
    'RetryCallback',
    'RetryConfig',
    'RetryStats',
    'calculate_backoff',
    'classify_error',
    'get_retry_after',
    'interruptible_sleep',
    'iter_with_retry',
    'with_retry',
]
