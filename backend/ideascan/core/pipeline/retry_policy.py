# backend/ideascan/core/pipeline/retry_policy.py
"""
Bounded exponential backoff around one fallible async call.

Failure taxonomy:
    - transient (TransientProviderError, TransientSourceError, httpx
      timeouts/transport errors, or a result matching retry_on_result)
      -> sleep min(2^attempt, max_backoff) and retry, up to max_attempts
    - permanent (anything else) -> re-raised immediately

On exhaustion RetryExhaustedError is raised carrying the last error;
callers must turn it into a terminal fallback outcome.

Usage:
    policy = RetryPolicy.from_settings()
    response = await policy.run(lambda: provider.classify(request))
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import httpx

from ...config import settings
from ..exceptions import RetryExhaustedError, TransientProviderError, TransientSourceError

logger = logging.getLogger("ideascan.pipeline.retry")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientProviderError,
    TransientSourceError,
    httpx.TimeoutException,
    httpx.TransportError,
)


class RetryPolicy:
    """
    Retry wrapper for one model/source invocation.

    Attributes:
        max_attempts: total attempts including the first one
        max_backoff: cap on the per-retry sleep in seconds
        sleep: awaitable sleep function (injectable for tests)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        max_backoff: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transient_errors: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    ):
        self.max_attempts = max(1, max_attempts)
        self.max_backoff = max_backoff
        self._sleep = sleep
        self._transient_errors = transient_errors

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        params = {
            "max_attempts": settings.retry_max_attempts,
            "max_backoff": settings.retry_max_backoff_seconds,
        }
        params.update(overrides)
        return cls(**params)

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        return min(2 ** attempt, self.max_backoff)

    def is_transient(self, error: BaseException) -> bool:
        return isinstance(error, self._transient_errors)

    async def run(
        self,
        call: Callable[[], Awaitable[Any]],
        retry_on_result: Optional[Callable[[Any], bool]] = None,
        description: str = "call",
    ) -> Any:
        """
        Invoke `call` until it succeeds, fails permanently, or attempts run out.

        Args:
            call: zero-argument coroutine factory (a fresh coroutine per attempt)
            retry_on_result: predicate marking a returned value as transient
            description: label used in log messages

        Raises:
            RetryExhaustedError: transient failures on every attempt
            Exception: the first permanent error, unchanged
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await call()
            except Exception as e:
                if not self.is_transient(e):
                    logger.warning(f"{description} failed permanently on attempt {attempt}: {e}")
                    raise
                last_error = e
                logger.warning(f"{description} transient failure (attempt {attempt}/{self.max_attempts}): {e}")
            else:
                if retry_on_result is None or not retry_on_result(result):
                    return result
                last_error = None
                logger.warning(
                    f"{description} returned a retryable result (attempt {attempt}/{self.max_attempts})"
                )

            if attempt < self.max_attempts:
                await self._sleep(self.backoff(attempt))

        raise RetryExhaustedError(self.max_attempts, last_error)
