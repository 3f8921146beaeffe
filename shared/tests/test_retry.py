"""
Unit tests for retry helpers and the circuit breaker.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import RetryConfig, RetryError, _calculate_delay, retry_call, retry_on_exception


NO_WAIT = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


class TestRetryCall:
    """Test cases for retry_call."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

        assert await retry_call(func, "arg", exceptions=(ConnectionError,), config=NO_WAIT) == "ok"
        assert func.await_count == 2
        func.assert_awaited_with("arg")

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(RetryError) as exc_info:
            await retry_call(func, exceptions=(ConnectionError,), config=NO_WAIT)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        func = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await retry_call(func, exceptions=(ConnectionError,), config=NO_WAIT)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_decorator(self):
        calls = []

        @retry_on_exception(exceptions=(ValueError,), config=NO_WAIT)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ValueError("not yet")
            return len(calls)

        assert await flaky() == 3

    @pytest.mark.asyncio
    async def test_waits_between_attempts(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])
        config = RetryConfig(max_attempts=2, base_delay=0.5, jitter=False)

        with patch("shared.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_call(func, exceptions=(ConnectionError,), config=config)

        sleep.assert_awaited_once_with(0.5)

    def test_delay_strategies(self):
        exponential = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        linear = RetryConfig(base_delay=1.0, jitter=False, backoff_strategy="linear")

        assert [_calculate_delay(n, exponential) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
        assert _calculate_delay(3, linear) == 3.0


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60.0, name="test")
        failing = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        assert breaker.is_open() is True
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(failing)
        assert failing.await_count == 2
        assert breaker.get_state()["state"] == "open"

    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        breaker = CircuitBreaker(failure_threshold=2, name="test")
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok", ConnectionError("down")])

        with pytest.raises(ConnectionError):
            await breaker.call(func)
        assert await breaker.call(func) == "ok"
        with pytest.raises(ConnectionError):
            await breaker.call(func)

        assert breaker.is_open() is False
        assert breaker.get_state()["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_half_open_success_closes_breaker(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.0, name="test")

        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError("down")))

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.get_state()["state"] == "closed"
