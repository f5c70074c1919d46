"""
Retry with exponential backoff and jitter.

delay(attempt) = min(base_delay * 2 ** (attempt - 1), max_delay) + uniform(0, jitter)

where attempt is the 1-based number of the attempt that just failed. Client
errors (4xx other than 429) and validation errors fail on the first attempt;
rate limits, 5xx, network failures, auth errors and unknown errors are
retried until max_attempts is reached.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from tablesync.errors import (
    ErrorKind,
    OperationFailed,
    classify_error,
    is_retryable,
    root_message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_JITTER = 1.0


class RetryExecutor:
    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: float = DEFAULT_JITTER,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or max_delay < 0 or jitter < 0:
            raise ValueError("delays must be non-negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()

    def calculate_delay(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """
        Backoff before the attempt after `attempt`.

        Args:
            attempt: 1-based number of the attempt that just failed.
            base_delay: overrides the executor default for this call.

        Returns:
            Delay in seconds.
        """
        base = self.base_delay if base_delay is None else base_delay
        delay = min(base * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += self._rng.uniform(0, self.jitter)
        return delay

    async def retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        *,
        description: str = "operation",
        default_kind: ErrorKind = ErrorKind.UNKNOWN,
    ) -> T:
        """
        Run operation until it succeeds or attempts run out.

        Args:
            operation: zero-argument coroutine factory. Called once per attempt.
            max_attempts: overrides the executor default for this call.
            base_delay: overrides the executor default for this call.
            description: what is being attempted, for log lines.
            default_kind: kind recorded for untyped failures.

        Returns:
            The operation's result.

        Raises:
            OperationFailed: after the last attempt fails (or on the first
                non-retryable failure), chained to the underlying exception.
        """
        limit = max_attempts or self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                kind = classify_error(exc, default_kind)
                if not is_retryable(exc) or attempt >= limit:
                    raise OperationFailed(
                        f"{description} failed after {attempt} attempt(s): {root_message(exc)}",
                        kind=kind,
                        attempts=attempt,
                    ) from exc
                delay = self.calculate_delay(attempt, base_delay)
                logger.warning(
                    "%s failed (attempt %d/%d, %s): %s; retrying in %.2fs",
                    description,
                    attempt,
                    limit,
                    kind.value,
                    exc,
                    delay,
                )
                await self._sleep(delay)
