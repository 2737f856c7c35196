"""
Retry policy shared by every remote call site.

``RetryPolicy.run`` drives one logical operation:

1. Call ``fn``.
2. On a failover-class error (network) and only once per run, invoke the
   ``on_switch`` hook and retry immediately without charging an attempt.
3. Non-retryable (fatal) errors propagate at once.
4. Anything else is retried after ``backoff(attempt)`` seconds until
   ``max_attempts`` is reached, then :class:`RetryExhaustedError` is raised,
   chained to the last failure.

Exceptions that are not :class:`~subspace_sync.errors.RemoteError` are
programming errors and propagate untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from subspace_sync.errors import (
    RemoteError,
    RetryExhaustedError,
    is_fatal,
    is_network,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float, factor: float) -> Callable[[int], float]:
    """Return ``attempt -> base * factor ** (attempt - 1)``."""

    def _delay(attempt: int) -> float:
        return base * factor ** (attempt - 1)

    return _delay


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 5,
        backoff: Callable[[int], float] = exponential_backoff(1.0, 1.5),
        is_retryable: Callable[[BaseException], bool] = lambda exc: not is_fatal(exc),
        is_failover: Callable[[BaseException], bool] = is_network,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.is_retryable = is_retryable
        self.is_failover = is_failover
        self._sleep = sleep

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        on_switch: Optional[Callable[[], object]] = None,
        label: str = "",
    ) -> T:
        switched = False
        attempt = 1
        while True:
            try:
                return await fn()
            except RemoteError as exc:
                if on_switch is not None and not switched and self.is_failover(exc):
                    logger.info("Switching endpoints for %s due to network error: %s", label, exc)
                    on_switch()
                    switched = True
                    continue

                if not self.is_retryable(exc):
                    logger.error("Non-retryable failure for %s after %s attempt(s): %s", label, attempt, exc)
                    raise

                if attempt >= self.max_attempts:
                    logger.error("Failed after %s attempts for %s: %s", attempt, label, exc)
                    raise RetryExhaustedError(
                        f"Failed after {attempt} attempts: {exc}",
                        attempts=attempt,
                        status=exc.status,
                        endpoint=exc.endpoint,
                        path=exc.path,
                    ) from exc

                delay = self.backoff(attempt)
                logger.warning(
                    "Attempt %s failed for %s, retrying in %.2fs: %s", attempt, label, delay, exc
                )
                await self._sleep(delay)
                attempt += 1
