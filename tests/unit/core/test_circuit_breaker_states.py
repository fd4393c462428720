"""Tests for circuit breaker state transitions."""

from unittest.mock import MagicMock

import pytest

from analysis_ops.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from analysis_ops.core.errors import CircuitOpenError


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "job_executor",
        failure_threshold=3,
        reset_timeout_s=60,
        failure_window_s=300,
        now_fn=clock,
    )


def _open(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure("boom")


class TestCircuitBreaker:
    def test_starts_closed(self, breaker):
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_opens_after_consecutive_failures(self, breaker):
        breaker.record_failure("a")
        breaker.record_failure("b")
        assert breaker.get_state() == CircuitState.CLOSED

        breaker.record_failure("c")
        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.allow_request() is False
        assert breaker.get_stats().last_error == "c"

    def test_opens_on_windowed_failures_despite_successes(self, breaker, clock):
        breaker.record_failure("a")
        breaker.record_success()
        breaker.record_failure("b")
        breaker.record_success()
        breaker.record_failure("c")

        assert breaker.get_state() == CircuitState.OPEN

    def test_old_failures_leave_the_window(self, breaker, clock):
        breaker.record_failure("a")
        breaker.record_success()
        clock.advance(seconds=301)
        breaker.record_failure("b")
        breaker.record_success()
        breaker.record_failure("c")

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.get_stats().recent_failures == 2

    def test_half_open_after_timeout_admits_one_probe(self, breaker, clock):
        _open(breaker)
        clock.advance(seconds=59)
        assert breaker.allow_request() is False

        clock.advance(seconds=1)
        assert breaker.allow_request() is True
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.allow_request() is False

    def test_probe_success_closes(self, breaker, clock):
        _open(breaker)
        clock.advance(seconds=60)
        breaker.allow_request()
        breaker.record_success()

        assert breaker.get_state() == CircuitState.CLOSED
        stats = breaker.get_stats()
        assert stats.failures == 0
        assert stats.recent_failures == 0
        assert stats.opened_at is None

    def test_probe_failure_reopens(self, breaker, clock):
        _open(breaker)
        clock.advance(seconds=60)
        breaker.allow_request()
        breaker.record_failure("still down")

        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.get_stats().opened_at == clock()
        assert breaker.allow_request() is False

    def test_released_probe_can_be_reused(self, breaker, clock):
        _open(breaker)
        clock.advance(seconds=60)
        assert breaker.allow_request() is True
        breaker.release_probe()
        assert breaker.allow_request() is True

    def test_force_reset(self, breaker):
        _open(breaker)
        breaker.force_reset()

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.get_stats().last_error is None
        assert breaker.allow_request() is True

    def test_listeners_see_each_transition(self, breaker, clock):
        listener = MagicMock()
        breaker.listeners.append(listener)

        _open(breaker)
        clock.advance(seconds=60)
        breaker.allow_request()
        breaker.record_success()

        states = [c.args[1] for c in listener.call_args_list]
        assert states == [CircuitState.OPEN, CircuitState.HALF_OPEN, CircuitState.CLOSED]

    def test_listener_error_does_not_break_breaker(self, breaker):
        breaker.listeners.append(MagicMock(side_effect=RuntimeError("listener bug")))
        _open(breaker)
        assert breaker.get_state() == CircuitState.OPEN

    def test_stats_dict(self, breaker, clock):
        breaker.record_failure("x")
        data = breaker.get_stats().to_dict()
        assert data["state"] == "closed"
        assert data["failures"] == 1
        assert data["last_failure"] == clock().isoformat()


class TestCall:
    @pytest.mark.asyncio
    async def test_call_passes_result(self, breaker):
        async def ok(value):
            return value * 2

        assert await breaker.call(ok, 21) == 42

    @pytest.mark.asyncio
    async def test_call_records_failure_and_reraises(self, breaker):
        async def boom():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await breaker.call(boom)
        assert breaker.get_stats().failures == 1

    @pytest.mark.asyncio
    async def test_call_rejected_when_open(self, breaker):
        _open(breaker)

        async def never():
            raise AssertionError("should not run")

        with pytest.raises(CircuitOpenError):
            await breaker.call(never)


class TestRegistry:
    def test_one_breaker_per_service(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=2, now_fn=clock)
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert registry.get("a").failure_threshold == 2

    def test_listener_attached_to_existing_and_new(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=1, now_fn=clock)
        existing = registry.get("a")
        listener = MagicMock()
        registry.add_listener(listener)
        created = registry.get("b")

        existing.record_failure("x")
        created.record_failure("y")

        assert listener.call_count == 2

    def test_status_and_reset_all(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=1, now_fn=clock)
        registry.get("a").record_failure("x")

        assert registry.get_circuit_status()["a"]["state"] == "open"
        registry.reset_all()
        assert registry.get_circuit_status()["a"]["state"] == "closed"

    def test_from_settings(self, settings):
        registry = CircuitBreakerRegistry.from_settings(settings)
        breaker = registry.get("job_executor")
        assert breaker.failure_threshold == settings.circuit_failure_threshold
