"""Tests for app/resilience/breaker.py and app/resilience/registry.py."""

import asyncio

import pytest

from app.core.config import Settings
from app.core.errors import CircuitOpenError, OperationTimeoutError
from app.resilience.breaker import CircuitBreaker, CircuitState
from app.resilience.registry import BreakerRegistry


class Boom(Exception):
    pass


class Dependency:
    """Scripted dependency that records every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise Boom(f"failure {self.calls}")
        return "ok"


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker("test", failure_threshold=3, reset_timeout=10, call_timeout=None, clock=clock)


async def trip(breaker: CircuitBreaker) -> None:
    failing = Dependency(fail=True)
    for _ in range(breaker.failure_threshold):
        with pytest.raises(Boom):
            await breaker.execute(failing)


class TestClosed:
    async def test_passes_results_through(self, breaker):
        assert await breaker.execute(Dependency()) == "ok"
        assert breaker.state is CircuitState.CLOSED

    async def test_errors_propagate_unchanged(self, breaker):
        with pytest.raises(Boom):
            await breaker.execute(Dependency(fail=True))
        assert breaker.failure_count == 1
        assert breaker.state is CircuitState.CLOSED

    async def test_success_resets_failure_count(self, breaker):
        for _ in range(2):
            with pytest.raises(Boom):
                await breaker.execute(Dependency(fail=True))
        await breaker.execute(Dependency())
        assert breaker.failure_count == 0

        with pytest.raises(Boom):
            await breaker.execute(Dependency(fail=True))
        assert breaker.state is CircuitState.CLOSED


class TestOpen:
    async def test_opens_at_threshold(self, breaker):
        await trip(breaker)
        assert breaker.state is CircuitState.OPEN
        assert breaker.stats.circuit_opens == 1

    async def test_rejects_without_calling_operation(self, breaker, clock):
        await trip(breaker)
        dependency = Dependency()
        clock.advance(4)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(dependency)

        assert dependency.calls == 0
        assert exc_info.value.name == "test"
        assert exc_info.value.retry_after == pytest.approx(6)
        assert breaker.stats.total_rejections == 1

    async def test_retry_after(self, breaker, clock):
        assert breaker.retry_after() == 0
        await trip(breaker)
        clock.advance(3)
        assert breaker.retry_after() == pytest.approx(7)


class TestRecovery:
    async def test_half_open_after_reset_timeout(self, breaker, clock):
        await trip(breaker)
        clock.advance(10)
        dependency = Dependency()

        await breaker.execute(dependency)

        assert dependency.calls == 1
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.success_count == 1

    async def test_closes_after_success_threshold(self, breaker, clock):
        await trip(breaker)
        clock.advance(10)
        for _ in range(3):
            await breaker.execute(Dependency())

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.stats.circuit_closes == 1

    async def test_half_open_failure_reopens(self, breaker, clock):
        await trip(breaker)
        clock.advance(10)
        await breaker.execute(Dependency())
        await breaker.execute(Dependency())

        with pytest.raises(Boom):
            await breaker.execute(Dependency(fail=True))

        assert breaker.state is CircuitState.OPEN
        clock.advance(9)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(Dependency())

    async def test_end_to_end_recovery(self, clock):
        breaker = CircuitBreaker("e2e", failure_threshold=3, reset_timeout=1.0, call_timeout=None, clock=clock)
        await trip(breaker)
        assert breaker.state is CircuitState.OPEN

        clock.advance(0.5)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(Dependency())

        clock.advance(0.6)
        await breaker.execute(Dependency())
        assert breaker.state is CircuitState.HALF_OPEN
        await breaker.execute(Dependency())
        await breaker.execute(Dependency())

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestTimeout:
    async def test_slow_call_is_a_tagged_failure(self):
        breaker = CircuitBreaker("slow", failure_threshold=1, call_timeout=0.05)
        finished = False

        async def slow():
            nonlocal finished
            await asyncio.sleep(5)
            finished = True

        with pytest.raises(OperationTimeoutError) as exc_info:
            await breaker.execute(slow)

        assert exc_info.value.name == "slow"
        assert breaker.stats.total_timeouts == 1
        assert breaker.stats.total_failures == 1
        assert breaker.state is CircuitState.OPEN
        await asyncio.sleep(0.01)
        assert finished is False


class TestFallback:
    async def test_fallback_answers_failures(self, breaker):
        async def fallback():
            return "cached"

        assert await breaker.execute(Dependency(fail=True), fallback) == "cached"
        assert breaker.failure_count == 1
        assert breaker.stats.total_fallbacks == 1

    async def test_fallback_answers_while_open(self, breaker):
        await trip(breaker)

        async def fallback():
            return "cached"

        assert await breaker.execute(Dependency(), fallback) == "cached"

    async def test_primary_error_wins_when_fallback_fails(self, breaker):
        primary = Boom("primary")

        async def operation():
            raise primary

        async def fallback():
            raise RuntimeError("fallback")

        with pytest.raises(Boom) as exc_info:
            await breaker.execute(operation, fallback)

        assert exc_info.value is primary
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestManualControl:
    async def test_force_open_and_close(self, breaker):
        breaker.force_open()
        with pytest.raises(CircuitOpenError):
            await breaker.execute(Dependency())

        breaker.force_close()
        assert await breaker.execute(Dependency()) == "ok"

    async def test_reset_keeps_stats(self, breaker):
        await trip(breaker)
        breaker.reset()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.stats.total_failures == 3
        assert breaker.stats.state_transitions == 2

    async def test_every_transition_is_counted(self, breaker, clock):
        await trip(breaker)
        clock.advance(10)
        await breaker.execute(Dependency())
        breaker.reset()

        snapshot = breaker.snapshot()
        assert snapshot["stats"]["state_transitions"] == 3
        assert [change["state"] for change in snapshot["recent_state_changes"]] == ["open", "half_open", "closed"]

    def test_reset_when_closed_is_not_a_transition(self, breaker):
        breaker.reset()
        assert breaker.stats.state_transitions == 0

    def test_snapshot(self, breaker):
        snapshot = breaker.snapshot()
        assert snapshot["name"] == "test"
        assert snapshot["state"] == "closed"
        assert snapshot["last_failure_ago_seconds"] is None
        assert snapshot["stats"]["total_requests"] == 0


class TestRegistry:
    def test_from_settings(self):
        registry = BreakerRegistry.from_settings(Settings())
        assert registry["ai"].failure_threshold == 5
        assert registry["database"].reset_timeout == 30
        assert registry["generic"].call_timeout == 20
        assert "missing" not in registry

    def test_duplicate_name_rejected(self):
        registry = BreakerRegistry()
        registry.register(CircuitBreaker("ai"))
        with pytest.raises(ValueError):
            registry.register(CircuitBreaker("ai"))

    async def test_instances_are_independent(self, clock):
        registry = BreakerRegistry.from_settings(Settings(), clock=clock)
        for _ in range(5):
            with pytest.raises(Boom):
                await registry["ai"].execute(Dependency(fail=True))

        assert registry.open_circuits() == ["ai"]
        assert registry["database"].state is CircuitState.CLOSED
        assert await registry["database"].execute(Dependency()) == "ok"
