"""Bounded retry + timeout wrapper for every call to an external provider."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from errandhub.config import settings
from errandhub.errors import ExternalServiceError, PermanentServiceError, TransientServiceError

logger = logging.getLogger("errandhub.retry")

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_http_error(exc: Exception) -> Exception:
    """Map an httpx failure onto the transient/permanent split."""
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUS_CODES:
            return TransientServiceError(f"HTTP {exc.response.status_code}")
        return PermanentServiceError(f"HTTP {exc.response.status_code}")
    if isinstance(exc, httpx.TransportError):
        return TransientServiceError(type(exc).__name__)
    return exc


async def call_external(
    operation: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int | None = None,
    timeout: float | None = None,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` under a timeout with a small retry budget.

    Only ``TransientServiceError`` and timeouts are retried, with exponential
    backoff. ``PermanentServiceError`` is surfaced at once. Either way the
    caller receives an ``ExternalServiceError``.
    """
    max_attempts = attempts or settings.external_max_attempts
    time_limit = timeout or settings.external_timeout_seconds

    retrying = AsyncRetrying(
        retry=retry_if_exception_type((TransientServiceError, TimeoutError)),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=settings.external_backoff_seconds,
            max=settings.external_backoff_max_seconds,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=time_limit)
    except PermanentServiceError as exc:
        logger.warning("%s failed permanently: %s", operation, exc)
        raise ExternalServiceError(f"{operation} failed: {exc}") from exc
    except (TransientServiceError, TimeoutError) as exc:
        logger.error("%s gave up after %d attempts: %s", operation, max_attempts, exc)
        raise ExternalServiceError(f"{operation} is unavailable, please try again later") from exc
    raise AssertionError("unreachable")  # pragma: no cover
