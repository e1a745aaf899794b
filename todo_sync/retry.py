"""Bounded retry with capped exponential backoff around one gateway call."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based: the wait after attempt 1 failed)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


class RetryController:
    """Runs a coroutine function, retrying only `TransientError`.

    Anything else (validation, auth, not-found, conflict) propagates on the
    first failure. When the budget runs out a `RetryExhaustedError` wraps
    the last transient failure.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        if self.policy.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        self._sleep = sleep

    async def run(self, fn: Callable[..., Awaitable[Any]], *args, label: str = 'request', **kwargs) -> Any:
        attempts = self.policy.max_attempts
        last: Optional[TransientError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except TransientError as e:
                last = e
                if attempt >= attempts:
                    break
                delay = self.policy.delay_for(attempt)
                logger.warning('%s failed (attempt %d/%d): %s; retrying in %.2fs', label, attempt, attempts, e, delay)
                await self._sleep(delay)
        logger.error('%s failed after %d attempt(s): %s', label, attempts, last)
        raise RetryExhaustedError(attempts, last)
