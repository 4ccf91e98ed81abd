"""
Tests for CircuitBreaker.

Validates:
  - threshold consecutive failures -> OPEN, calls rejected without running
  - after cooldown, one trial call allowed; success closes, failure reopens
  - broker business errors do not trip the breaker
"""
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock

from alphaforge.exceptions import BrokerAPIError, CircuitOpenError, UpstreamUnavailable
from alphaforge.utils.circuit_breaker import CircuitBreaker, CircuitState
from alphaforge.utils.retry import is_transient


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionResetError):
            await breaker.execute(AsyncMock(side_effect=ConnectionResetError("reset")))


class TestCircuitBreakerBasics:

    def test_starts_closed(self):
        breaker = CircuitBreaker()
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        breaker = CircuitBreaker()
        assert await breaker.execute(AsyncMock(return_value=42)) == 42

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=5)
        await _trip(breaker, 4)
        assert breaker.failure_count == 4
        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestCircuitOpening:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_skips_function(self):
        breaker = CircuitBreaker(failure_threshold=5)
        await _trip(breaker, 5)
        assert breaker.state == CircuitState.OPEN

        func = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(func)
        func.assert_not_awaited()
        assert exc_info.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_any_exception_counts_by_default(self):
        breaker = CircuitBreaker(failure_threshold=5)
        failing = AsyncMock(side_effect=RuntimeError("failure"))
        for _ in range(5):
            with pytest.raises(RuntimeError):
                await breaker.execute(failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.execute(failing)
        assert failing.await_count == 5

    @pytest.mark.asyncio
    async def test_business_error_does_not_open_transient_only_circuit(self):
        breaker = CircuitBreaker(failure_threshold=2, counts_as_failure=is_transient)
        for _ in range(5):
            with pytest.raises(BrokerAPIError):
                await breaker.execute(AsyncMock(side_effect=BrokerAPIError("bad symbol", status=400)))
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_upstream_5xx_counts(self):
        breaker = CircuitBreaker(failure_threshold=2, counts_as_failure=is_transient)
        for _ in range(2):
            with pytest.raises(UpstreamUnavailable):
                await breaker.execute(AsyncMock(side_effect=UpstreamUnavailable("503", status=503)))
        assert breaker.state == CircuitState.OPEN


class TestCooldownAndHalfOpen:

    @pytest.mark.asyncio
    async def test_allows_trial_call_after_cooldown(self):
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60)
        await _trip(breaker, 2)

        # Simulate cooldown elapsed
        breaker._last_open_time = datetime.now(timezone.utc) - timedelta(seconds=61)
        assert await breaker.can_execute() is True
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_trial_success_closes_circuit(self):
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60)
        await _trip(breaker, 2)
        breaker._last_open_time = datetime.now(timezone.utc) - timedelta(seconds=61)

        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_trial_failure_reopens_and_restarts_cooldown(self):
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60)
        await _trip(breaker, 2)
        first_open = datetime.now(timezone.utc) - timedelta(seconds=61)
        breaker._last_open_time = first_open

        await _trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker._last_open_time > first_open
        with pytest.raises(CircuitOpenError):
            await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_only_one_trial_in_flight(self):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60)
        await _trip(breaker, 1)
        breaker._last_open_time = datetime.now(timezone.utc) - timedelta(seconds=61)

        assert await breaker.can_execute() is True
        with pytest.raises(CircuitOpenError):
            await breaker.can_execute()


class TestManualControl:

    @pytest.mark.asyncio
    async def test_force_open_and_close(self):
        breaker = CircuitBreaker()
        await breaker.force_open()
        assert breaker.state == CircuitState.OPEN
        await breaker.force_close()
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_state_info(self):
        breaker = CircuitBreaker(failure_threshold=1, name="breeze")
        await _trip(breaker, 1)
        info = breaker.get_state_info()
        assert info["name"] == "breeze"
        assert info["state"] == "open"
        assert info["failure_count"] == 1
        assert info["last_open"] is not None


class TestUncountedFailures:

    @pytest.mark.asyncio
    async def test_uncounted_failure_keeps_streak(self):
        breaker = CircuitBreaker(failure_threshold=3, counts_as_failure=is_transient)
        await _trip(breaker, 2)
        with pytest.raises(BrokerAPIError):
            await breaker.execute(AsyncMock(side_effect=BrokerAPIError("bad symbol", status=400)))
        assert breaker.failure_count == 2

        await _trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_uncounted_trial_failure_frees_trial_slot(self):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60, counts_as_failure=is_transient)
        await _trip(breaker, 1)
        breaker._last_open_time = datetime.now(timezone.utc) - timedelta(seconds=61)

        with pytest.raises(BrokerAPIError):
            await breaker.execute(AsyncMock(side_effect=BrokerAPIError("bad symbol", status=400)))
        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED
