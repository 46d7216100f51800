"""
Bounded exponential backoff for upstream calls.

One policy object is shared by every call site that talks to Gripp. With the
defaults (5 retries, 2s base) a permanently failing call is attempted six
times, sleeping 2, 4, 8, 16 and 32 seconds in between.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from dashboard.gripp.client import GrippError

logger = logging.getLogger(__name__)


class RetryExhaustedError(GrippError):
    """All attempts failed with retryable errors."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(exc: BaseException) -> bool:
    """Transient failures: timeouts, malformed payloads, 429 and 5xx."""
    if isinstance(exc, GrippError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 2.0,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.retryable = retryable
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (1-based)."""
        return self.base_delay * 2 ** (attempt - 1)

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, description: str = "upstream call", **kwargs):
        """
        Await fn(*args, **kwargs), retrying retryable failures.

        Raises:
            RetryExhaustedError: after max_retries retries all failed.
            Exception: any non-retryable error, unchanged and immediately.
        """
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                if attempt >= self.max_retries:
                    raise RetryExhaustedError(description, attempt + 1, exc) from exc
                attempt += 1
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (%s); retry %d/%d in %.1fs",
                    description, exc, attempt, self.max_retries, delay,
                )
                await self._sleep(delay)
