"""Async circuit breaker for outbound dependencies.

State machine::

    CLOSED --(failure_threshold failures)--> OPEN --(reset_timeout)--> HALF_OPEN
      ^                                                                  |
      +-------------(success_threshold consecutive successes)-----------+
                                 +--(any failure)--> OPEN

Every state read-then-write happens synchronously before or after the
single ``await`` on the guarded operation, so interleaved requests on the
event loop never observe a half-applied transition.

Usage::

    breaker = CircuitBreaker("ai", failure_threshold=5, reset_timeout=60, call_timeout=25)

    try:
        text = await breaker.execute(lambda: client.generate(prompt))
    except CircuitOpenError:
        return degraded_response()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from app.core.errors import CircuitOpenError, OperationTimeoutError

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_timeouts: int = 0
    total_rejections: int = 0
    total_fallbacks: int = 0
    circuit_opens: int = 0
    circuit_closes: int = 0
    state_transitions: int = 0
    state_changes: deque = field(default_factory=lambda: deque(maxlen=50))

    def as_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_timeouts": self.total_timeouts,
            "total_rejections": self.total_rejections,
            "total_fallbacks": self.total_fallbacks,
            "circuit_opens": self.circuit_opens,
            "circuit_closes": self.circuit_closes,
            "state_transitions": self.state_transitions,
        }


class CircuitBreaker:
    """
    Failure-tracking wrapper around one unreliable dependency.

    Args:
        name: Dependency name used in logs, errors and health output.
        failure_threshold: Consecutive failures (while CLOSED) that open the circuit.
        reset_timeout: Seconds to stay OPEN before letting probes through.
        call_timeout: Seconds each guarded call may take; ``None`` disables it.
        success_threshold: Consecutive HALF_OPEN successes needed to close.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        call_timeout: Optional[float] = 30.0,
        success_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self.stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit lets a probe through (0 otherwise)."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self.stats.state_transitions += 1
        self.stats.state_changes.append((new_state.value, self._clock()))
        logger.warning(f"CircuitBreaker '{self.name}': {old_state.value.upper()} -> {new_state.value.upper()}")

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._success_count = 0
        self.stats.circuit_opens += 1
        self._transition(CircuitState.OPEN)

    def _close(self) -> None:
        self._failure_count = 0
        self._success_count = 0
        self.stats.circuit_closes += 1
        self._transition(CircuitState.CLOSED)

    def _admit(self) -> None:
        """Apply OPEN -> HALF_OPEN timing and reject while still OPEN."""
        if self._state is not CircuitState.OPEN:
            return
        elapsed = self._clock() - (self._opened_at or 0.0)
        if elapsed >= self.reset_timeout:
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)
            return
        self.stats.total_rejections += 1
        raise CircuitOpenError(self.name, self.reset_timeout - elapsed)

    def _on_success(self) -> None:
        self._failure_count = 0
        self.stats.total_successes += 1
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._close()
                logger.info(f"CircuitBreaker '{self.name}': service recovered")

    def _on_failure(self, exc: BaseException, timed_out: bool = False) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()
        self.stats.total_failures += 1
        if timed_out:
            self.stats.total_timeouts += 1

        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            self._open()
            logger.error(
                f"CircuitBreaker '{self.name}': tripped after {self._failure_count} failures. Last: {exc}"
            )
        else:
            logger.debug(f"CircuitBreaker '{self.name}' failure: {exc}")

    async def _fallback(self, fallback: Operation, original: Exception) -> Any:
        self.stats.total_fallbacks += 1
        try:
            return await fallback()
        except Exception as fallback_error:
            logger.warning(f"CircuitBreaker '{self.name}': fallback failed ({fallback_error})")
            raise original from fallback_error

    async def execute(self, operation: Operation, fallback: Optional[Operation] = None) -> Any:
        """
        Run ``operation`` through the breaker.

        Raises CircuitOpenError without calling ``operation`` while OPEN,
        OperationTimeoutError when ``call_timeout`` elapses, and otherwise
        re-raises the operation's own error. When ``fallback`` is given it
        answers instead; if it fails too the original error is raised.
        """
        self.stats.total_requests += 1
        try:
            self._admit()
        except CircuitOpenError as rejection:
            if fallback is None:
                raise
            return await self._fallback(fallback, rejection)

        try:
            if self.call_timeout is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(operation(), timeout=self.call_timeout)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            error = OperationTimeoutError(self.name, self.call_timeout or 0.0)
            self._on_failure(error, timed_out=True)
            if fallback is None:
                raise error from exc
            return await self._fallback(fallback, error)
        except Exception as exc:
            self._on_failure(exc)
            if fallback is None:
                raise
            return await self._fallback(fallback, exc)

        self._on_success()
        return result

    def force_open(self) -> None:
        self._open()

    def force_close(self) -> None:
        self._close()

    def reset(self) -> None:
        """Back to a pristine CLOSED state; cumulative stats are kept."""
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at = None
        self._opened_at = None
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        logger.info(f"CircuitBreaker '{self.name}' reset to CLOSED")

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "reset_timeout_seconds": self.reset_timeout,
            "call_timeout_seconds": self.call_timeout,
            "last_failure_ago_seconds": (
                round(now - self._last_failure_at, 1) if self._last_failure_at is not None else None
            ),
            "retry_after_seconds": round(self.retry_after(), 1),
            "stats": self.stats.as_dict(),
            "recent_state_changes": [
                {"state": state, "ago_seconds": round(now - at, 1)} for state, at in self.stats.state_changes
            ],
        }
