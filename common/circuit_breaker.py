"""
Circuit breaker guarding calls to the advertisement directory.

CLOSED counts consecutive failures and trips to OPEN at the threshold. OPEN
rejects calls with CircuitBreakerException until reset_timeout has passed,
then lets probe calls through as HALF_OPEN; enough probe successes close the
breaker again and any probe failure re-opens it.
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Tuple

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 3
    timeout: float = 10.0
    # Raised by a healthy dependency; they pass through and count as success
    ignored_exceptions: Tuple[type, ...] = ()

class CircuitBreakerException(Exception):
    """The breaker is open and the call was not attempted"""

class CircuitBreaker:

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.last_state_change = time.time()

    def _move_to(self, state: CircuitState):
        if state is self.state:
            return
        logger.info(f"Circuit breaker {self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self.success_count = 0
        if state is CircuitState.CLOSED:
            self.failure_count = 0
        self.last_state_change = time.time()

    def _on_success(self):
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._move_to(CircuitState.CLOSED)
        else:
            self.failure_count = 0

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning(f"Circuit breaker {self.name} opening after {self.failure_count} failures")
            self._move_to(CircuitState.OPEN)

    async def _invoke(self, func: Callable, *args, **kwargs) -> Any:
        # error_handling imports this module
        from common.error_handling import UpstreamUnavailableError

        # Blocking callables (the requests-based directory) run off the event loop
        if asyncio.iscoroutinefunction(func):
            pending = func(*args, **kwargs)
        else:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        try:
            return await asyncio.wait_for(pending, timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(f"{self.name} did not answer within {self.config.timeout}s",
                                           original_error=e) from e

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state is CircuitState.OPEN:
            if time.time() - self.last_failure_time < self.config.reset_timeout:
                raise CircuitBreakerException(f"Circuit breaker {self.name} is open")
            self._move_to(CircuitState.HALF_OPEN)

        try:
            result = await self._invoke(func, *args, **kwargs)
        except self.config.ignored_exceptions:
            self._on_success()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "seconds_in_state": round(time.time() - self.last_state_change, 3),
        }

def advertisement_directory_config() -> CircuitBreakerConfig:
    """Not-found and inactive advertisements are answers, not outages."""
    from common.error_handling import BusinessLogicError
    return CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0, success_threshold=2,
                                timeout=10.0, ignored_exceptions=(BusinessLogicError,))

def get_all_circuit_breakers(*breakers: CircuitBreaker) -> dict:
    return {breaker.name: breaker.get_state() for breaker in breakers}
