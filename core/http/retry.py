"""Retry policy for routing-provider calls.

A request is retried only when a second attempt could plausibly succeed:
dropped connections, timeouts, and HTTP 429/5xx answers. "No route" and
malformed responses are final.
"""

from __future__ import annotations

import asyncio
import logging

import aiohttp
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.exceptions import ExternalServiceError, RouteNotFoundError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RouteNotFoundError):
        return False
    if isinstance(exc, ExternalServiceError):
        return exc.details.get("status") in RETRYABLE_STATUSES
    return isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError))


def retry_transient(attempts: int = 2, initial_delay: float = 0.2):
    """Decorate an async provider call with ``attempts`` tries and exponential backoff."""
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=initial_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
