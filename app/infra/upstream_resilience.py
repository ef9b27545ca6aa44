# app/infra/upstream_resilience.py
"""
Async upstream resilience utilities.
Retry with exponential backoff for idempotent backend reads.
"""
from __future__ import annotations
import asyncio
from functools import wraps
from typing import Callable, TypeVar

import aiohttp

from app.core.dispatch.errors import UpstreamUnavailable
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# HTTP statuses worth retrying; everything else 4xx is the caller's fault.
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient_upstream_error(exc: BaseException) -> bool:
    """
    Check if an upstream error is transient (should retry).

    Transient errors:
    - UpstreamUnavailable raised by a backend client
    - Timeouts
    - Connection-level aiohttp errors
    - Retryable HTTP statuses (429, 5xx)
    """
    if isinstance(exc, UpstreamUnavailable):
        return exc.retryable

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True

    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status in RETRYABLE_STATUSES

    if isinstance(exc, aiohttp.ClientError):
        return True

    return False


def retry_on_upstream_error(
    max_retries: int = 3,
    initial_delay: float = 0.2,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
    operation: str | None = None,
):
    """
    Decorator to retry an async call on transient upstream errors.

    Only wrap idempotent reads. Writes fail fast and roll back instead.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries (seconds)
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries (seconds)
        operation: Label used in retry log lines

    Example:
        @retry_on_upstream_error(max_retries=3)
        async def load_drivers(self) -> list[Driver]:
            ...
    """
    def decorator(func: Callable) -> Callable:
        label = operation or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_upstream_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {label}: {exc}"
                        )
                        if isinstance(exc, UpstreamUnavailable):
                            raise
                        raise UpstreamUnavailable(f"{label} failed: {exc}") from exc

                    logger.warning(
                        f"Transient upstream error in {label} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise UpstreamUnavailable(f"{label} failed")

        return wrapper
    return decorator
