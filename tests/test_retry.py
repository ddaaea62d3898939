import asyncio
from unittest.mock import AsyncMock

import pytest

from sessionsync.retry import CircuitBreaker, CircuitOpen, backoff_delay, retry_with_backoff


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


def test_backoff_curve_is_exponential_and_capped():
    assert [backoff_delay(n, 1.0, 8.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


@pytest.mark.asyncio
class TestRetryWithBackoff:
    async def test_succeeds_after_transient_failures(self):
        operation = AsyncMock(side_effect=[Transient(), Transient(), "ok"])
        sleep = AsyncMock()

        result = await retry_with_backoff(
            operation,
            max_attempts=3,
            is_retryable=lambda e: isinstance(e, Transient),
            base_delay=1.0,
            sleep=sleep,
        )

        assert result == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_at_ceiling(self):
        operation = AsyncMock(side_effect=Transient())
        sleep = AsyncMock()

        with pytest.raises(Transient):
            await retry_with_backoff(operation, max_attempts=3, is_retryable=lambda e: True, sleep=sleep)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    async def test_non_retryable_error_is_raised_immediately(self):
        operation = AsyncMock(side_effect=Fatal())
        sleep = AsyncMock()

        with pytest.raises(Fatal):
            await retry_with_backoff(operation, max_attempts=3, is_retryable=lambda e: isinstance(e, Transient), sleep=sleep)

        assert operation.await_count == 1
        sleep.assert_not_awaited()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_concurrent_calls_are_coalesced(self):
        breaker = CircuitBreaker("fetch_user")
        gate = asyncio.Event()
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"id": 1}

        first = asyncio.create_task(breaker.call(operation))
        await asyncio.sleep(0)
        second = asyncio.create_task(breaker.call(operation))
        await asyncio.sleep(0)
        assert breaker.in_flight is True

        gate.set()
        assert await first == {"id": 1}
        assert await second == {"id": 1}
        assert calls == 1
        assert breaker.in_flight is False

    async def test_failures_open_the_circuit_with_growing_backoff(self):
        clock = FakeClock()
        breaker = CircuitBreaker("refresh", base_backoff=5.0, max_backoff=300.0, clock=clock)
        failing = AsyncMock(side_effect=Transient())

        with pytest.raises(Transient):
            await breaker.call(failing)
        assert breaker.next_attempt_at == 5.0

        with pytest.raises(CircuitOpen):
            await breaker.call(failing)
        assert failing.await_count == 1

        clock.now = 5.0
        with pytest.raises(Transient):
            await breaker.call(failing)
        assert breaker.next_attempt_at == 15.0

    async def test_backoff_is_capped(self):
        clock = FakeClock()
        breaker = CircuitBreaker("refresh", base_backoff=5.0, max_backoff=300.0, clock=clock)
        for _ in range(10):
            breaker.record_failure()
        assert breaker.next_attempt_at == 300.0

    async def test_success_resets(self):
        clock = FakeClock()
        breaker = CircuitBreaker("fetch_user", clock=clock)
        breaker.record_failure()
        clock.now = 100.0
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.failures == 0
        assert breaker.allow() is True
