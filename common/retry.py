"""
Retry with exponential backoff for idempotent upstream reads.

Only exceptions listed in RetryConfig.retryable_exceptions are retried;
anything else propagates on the first attempt.
"""
import asyncio
import logging
import random
from typing import Any, Callable, List, Optional

from common.error_handling import UpstreamUnavailableError

logger = logging.getLogger(__name__)

class RetryConfig:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (Exception,))

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    name = getattr(func, "__qualname__", repr(func))
    attempt = 1
    while True:
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(f"{name} still failing after {attempt} attempts: {e}")
                raise
            delay = config.backoff(attempt)
            logger.warning(f"{name} attempt {attempt}/{config.max_attempts} failed ({e}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1

ADVERTISEMENT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.2,
    max_delay=2.0,
    retryable_exceptions=[UpstreamUnavailableError]
)
