"""
Retry Logic — resilience against transient provider failures.

Networks drop and rate limits hit. Before any fragment of a completion has
been handed to the orchestrator, opening the stream is safe to repeat, so it
is wrapped here with exponential backoff and jitter. Once a fragment has
been yielded the attempt is committed and failures propagate unchanged.

Retryable:
- 429 (rate limit), 500/502/503/529 (server errors)
- connection-level failures (DNS, TCP, TLS, timeouts)
- ProviderError instances that say ``retryable=True``

NOT retryable: 400, 401, 403, 404 and malformed streams.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

import anthropic
import httpx
import structlog

from familiar.config import ProviderTuning
from familiar.errors import ProviderError, ProviderRateLimitError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 529})


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_tuning(cls, tuning: ProviderTuning) -> "RetryConfig":
        return cls(
            max_retries=tuning.retry_max_retries,
            base_delay=tuning.retry_base_delay,
            max_delay=tuning.retry_max_delay,
            exponential_base=tuning.retry_exponential_base,
            jitter_range=tuning.retry_jitter_range,
        )


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is transient and worth retrying."""
    if isinstance(error, ProviderError):
        if error.retryable:
            return True
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, anthropic.APIConnectionError):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def _retry_after(error: Exception) -> Optional[float]:
    """Extract a server-provided Retry-After hint, if any."""
    if isinstance(error, ProviderRateLimitError):
        return error.retry_after
    if isinstance(error, anthropic.APIStatusError):
        response = getattr(error, "response", None)
        if response is not None:
            try:
                value = response.headers.get("retry-after")
                return float(value) if value else None
            except (ValueError, AttributeError):
                return None
    return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

    Uses exponential backoff with jitter:
        delay = min(max_delay, base_delay * (exponential_base ^ attempt))
        delay += random jitter in [-jitter_range * delay, +jitter_range * delay]

    A server-provided Retry-After wins, but is never less than 1 second.
    """
    if retry_after is not None:
        return max(1.0, retry_after)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.1, delay + jitter)


async def with_retries(
    func: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], Any]] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> Any:
    """
    Execute an async function with retry logic.

    Args:
        func: The async function to execute (no arguments — use a closure)
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback when a retry occurs (attempt, error, delay)
        sleep: Injected sleep, so tests can run without real delays

    Returns:
        The result of the function call

    Raises:
        The last error if it is not retryable or all retries are exhausted
    """
    if config is None:
        config = RetryConfig()

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e),
                    attempt=attempt,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e),
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after(e))
            attempt += 1

            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 1),
            )

            if on_retry:
                on_retry(attempt, e, delay)

            await sleep(delay)
