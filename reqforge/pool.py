import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .config import MAX_ATTEMPTS, MAX_CONCURRENCY, RETRY_BACKOFF_MS
from .errors import RemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_S = 30.0


class CallPool:
    """Caps how many remote calls are in flight and retries retryable store errors.

    A permit is held only while one call runs, never while a caller awaits other
    work, so recursive callers sharing a pool cannot starve each other.
    """

    def __init__(
        self,
        max_concurrency: int = MAX_CONCURRENCY,
        max_attempts: int = MAX_ATTEMPTS,
        retry_backoff_ms: int = RETRY_BACKOFF_MS,
    ):
        if max_concurrency < 1:
            max_concurrency = 1
        if max_attempts < 1:
            max_attempts = 1
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.retry_backoff_ms = retry_backoff_ms
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def _delay(self, attempt: int, error: RemoteError) -> float:
        if error.retry_after is not None:
            return min(error.retry_after, MAX_BACKOFF_S)
        return min((self.retry_backoff_ms / 1000) * (2 ** (attempt - 1)), MAX_BACKOFF_S)

    async def run(self, label: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        attempt = 0
        while True:
            attempt += 1
            async with self._semaphore:
                try:
                    return await fn(*args, **kwargs)
                except RemoteError as e:
                    if not e.retryable or attempt >= self.max_attempts:
                        raise
                    delay = self._delay(attempt, e)
                    last_error = e
            # backoff outside the semaphore so waiting does not hold a permit
            logger.warning("%s failed (%s), retrying %d/%d in %.2fs", label, last_error, attempt, self.max_attempts, delay)
            if delay > 0:
                await asyncio.sleep(delay)
