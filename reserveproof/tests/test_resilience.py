from __future__ import annotations

import pytest

from reserveproof.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitState,
    backoff_delay,
    retry_with_circuit_breaker,
)


class Flaky:
    def __init__(self, failures: int, exc: Exception = ConnectionError("down")):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures() -> None:
    func = Flaky(2)
    result = await retry_with_circuit_breaker(
        func, CircuitBreaker("t"), max_retries=3, base_delay=0, retryable_exceptions=(ConnectionError,)
    )
    assert result == "ok"
    assert func.calls == 3


@pytest.mark.asyncio
async def test_retry_raises_last_error_when_exhausted() -> None:
    func = Flaky(10)
    with pytest.raises(ConnectionError):
        await retry_with_circuit_breaker(
            func, CircuitBreaker("t"), max_retries=2, base_delay=0, retryable_exceptions=(ConnectionError,)
        )
    assert func.calls == 2


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately() -> None:
    func = Flaky(1, exc=KeyError("bad"))
    with pytest.raises(KeyError):
        await retry_with_circuit_breaker(
            func, CircuitBreaker("t"), max_retries=3, base_delay=0, retryable_exceptions=(ConnectionError,)
        )
    assert func.calls == 1


@pytest.mark.asyncio
async def test_breaker_opens_and_rejects() -> None:
    breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=2, timeout=60))
    func = Flaky(10)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            async with breaker:
                await func()

    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerError):
        async with breaker:
            await func()
    assert func.calls == 2
    assert breaker.to_dict()["stats"]["total_rejections"] == 1


@pytest.mark.asyncio
async def test_breaker_recovers_through_half_open() -> None:
    breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=1, success_threshold=1, timeout=0))
    with pytest.raises(ConnectionError):
        async with breaker:
            raise ConnectionError("down")
    assert breaker.state is CircuitState.OPEN

    async with breaker:
        pass
    assert breaker.state is CircuitState.CLOSED

    breaker.reset()
    assert breaker.stats.consecutive_failures == 0


def test_backoff_delay_bounds() -> None:
    assert backoff_delay(3, 0, 30) == 0.0
    for attempt in range(6):
        delay = backoff_delay(attempt, 1.0, 4.0)
        assert 0.0 <= delay <= 4.0 * 1.3


@pytest.mark.asyncio
async def test_ignored_exceptions_do_not_open_breaker() -> None:
    breaker = CircuitBreaker("t", CircuitBreakerConfig(failure_threshold=2, ignored_exceptions=(KeyError,)))
    for _ in range(5):
        with pytest.raises(KeyError):
            async with breaker:
                raise KeyError("refused")

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats.total_failures == 0
    async with breaker:
        pass
