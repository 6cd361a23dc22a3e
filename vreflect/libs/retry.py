"""Retry policy for calls to external services."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

LOG = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry an async call after any failure, waiting between attempts.

    By default the wait is fixed and the number of attempts is unlimited, so a
    failing service stalls the caller until it recovers or the process is
    terminated. Cancellation and KeyboardInterrupt are never retried.

    Attributes:
        backoff_seconds: Wait before the first retry
        max_attempts: Give up and re-raise after this many attempts (None means never)
        exponential: Double the wait after each failure
        max_backoff_seconds: Upper bound on the wait when exponential
        timeout_seconds: Per-attempt timeout (None means no timeout)
        sleep: Awaitable sleep, replaceable in tests
    """
    backoff_seconds: float = 5.0
    max_attempts: Optional[int] = None
    exponential: bool = False
    max_backoff_seconds: float = 300.0
    timeout_seconds: Optional[float] = None
    sleep: SleepFunc = field(default=asyncio.sleep, repr=False, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if not self.exponential:
            return self.backoff_seconds
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any,
                   description: str = "call", **kwargs: Any) -> Any:
        """
        Await func(*args, **kwargs) until it succeeds.

        Args:
            func: Coroutine function to call
            description: Included in log messages to identify the call

        Returns:
            Whatever func returns on its first successful attempt

        Raises:
            Exception: The last failure, once max_attempts is exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.timeout_seconds:
                    return await asyncio.wait_for(func(*args, **kwargs), self.timeout_seconds)
                return await func(*args, **kwargs)
            except Exception as e:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    LOG.error("%s failed after %d attempts: %s", description, attempt, e)
                    raise
                delay = self.delay_for(attempt)
                LOG.error("%s failed on attempt %d, retrying in %.1fs: %s: %s",
                          description, attempt, delay, type(e).__name__, e)
                await self.sleep(delay)
