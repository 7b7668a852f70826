"""
Resilience utilities for outbound calls: circuit breakers and bounded retry.

Used for every ledger RPC call and every external price lookup.

Circuit Breaker States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are rejected immediately
- HALF_OPEN: Testing if service has recovered

Usage:
    breaker = CircuitBreaker("ledger_rpc")

    result = await retry_with_circuit_breaker(
        lambda: client.get_account(address),
        breaker=breaker,
        max_retries=3,
        retryable_exceptions=(aiohttp.ClientError, asyncio.TimeoutError),
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open."""

    def __init__(self, name: str, until: float):
        self.name = name
        self.until = until
        wait_time = max(0, until - time.time())
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. "
            f"Retry after {wait_time:.1f}s"
        )


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5       # Failures before opening
    success_threshold: int = 2       # Successes in half-open before closing
    timeout: float = 30.0            # Seconds to wait before half-open
    half_open_max_calls: int = 1
    # Errors meaning the dependency answered; counted as successes
    ignored_exceptions: Tuple[Type[BaseException], ...] = ()


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class CircuitBreaker:
    """
    Fails fast while a dependency (ledger RPC, price source) is down.

    Example:
        breaker = CircuitBreaker(name="spot_price")

        try:
            async with breaker:
                price = await fetch_price()
        except CircuitBreakerError:
            price = cached_price
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._opened_at: float = 0.0
        self._half_open_calls: int = 0
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    async def __aenter__(self) -> "CircuitBreaker":
        await self._before_call()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None or isinstance(exc_val, self._config.ignored_exceptions):
            await self._on_success()
        else:
            await self._on_failure(exc_val)
        return False

    async def _before_call(self) -> None:
        async with self._lock:
            self._stats.total_calls += 1

            if self._state == CircuitState.OPEN:
                if time.time() >= self._opened_at + self._config.timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                else:
                    self._stats.total_rejections += 1
                    raise CircuitBreakerError(
                        self._name,
                        self._opened_at + self._config.timeout,
                    )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._config.half_open_max_calls:
                    self._stats.total_rejections += 1
                    raise CircuitBreakerError(self._name, time.time() + 1.0)
                self._half_open_calls += 1

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.total_successes += 1
            self._stats.consecutive_successes += 1
            self._stats.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls -= 1
                if self._stats.consecutive_successes >= self._config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            self._stats.total_failures += 1
            self._stats.consecutive_failures += 1
            self._stats.consecutive_successes = 0

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls -= 1
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                if self._stats.consecutive_failures >= self._config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = time.time()
            logger.warning(
                f"Circuit breaker '{self._name}' OPENED after "
                f"{self._stats.consecutive_failures} failures"
            )
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            logger.info(f"Circuit breaker '{self._name}' entering HALF_OPEN")
        elif new_state == CircuitState.CLOSED:
            self._stats.consecutive_failures = 0
            logger.info(f"Circuit breaker '{self._name}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._stats.consecutive_failures = 0
        self._stats.consecutive_successes = 0
        self._half_open_calls = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.name,
            "stats": {
                "total_calls": self._stats.total_calls,
                "total_failures": self._stats.total_failures,
                "total_rejections": self._stats.total_rejections,
                "consecutive_failures": self._stats.consecutive_failures,
            },
        }


T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with +/-30% jitter, capped at ``max_delay``."""
    if base_delay <= 0:
        return 0.0
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.3 * random.uniform(-1, 1)
    return max(0.0, delay + jitter)


async def retry_with_circuit_breaker(
    func: Callable[[], Awaitable[T]],
    breaker: CircuitBreaker,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: tuple = (Exception,),
) -> T:
    """
    Execute ``func`` with exponential backoff behind ``breaker``.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        breaker: Circuit breaker guarding the dependency
        max_retries: Maximum attempts (at least one attempt is made)
        base_delay: Initial delay between attempts
        max_delay: Maximum delay between attempts
        retryable_exceptions: Exceptions that trigger another attempt

    Raises:
        CircuitBreakerError: If the circuit is open
        The last retryable exception once attempts are exhausted
    """
    attempts = max(1, max_retries)
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            async with breaker:
                return await func()
        except CircuitBreakerError:
            raise
        except retryable_exceptions as e:
            last_error = e
            logger.debug(
                f"{breaker.name}: attempt {attempt + 1}/{attempts} failed: {e}"
            )
            if attempt < attempts - 1:
                await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    assert last_error is not None
    raise last_error
