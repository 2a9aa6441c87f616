import logging
import time
from typing import Callable, Iterator

from app.core.config import Settings
from app.resilience.breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)


class BreakerRegistry:
    """Independent, named breaker instances (ai, database, generic, ...)."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic):
        registry = cls()
        for name, (threshold, reset_timeout, call_timeout) in settings.breakers().items():
            registry.register(
                CircuitBreaker(
                    name,
                    failure_threshold=threshold,
                    reset_timeout=reset_timeout,
                    call_timeout=call_timeout,
                    success_threshold=settings.breaker_success_threshold,
                    clock=clock,
                )
            )
        return registry

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        if breaker.name in self._breakers:
            raise ValueError(f"Circuit breaker '{breaker.name}' already registered")
        self._breakers[breaker.name] = breaker
        logger.info(
            f"CircuitBreaker '{breaker.name}' registered "
            f"(threshold={breaker.failure_threshold}, reset={breaker.reset_timeout}s, "
            f"timeout={breaker.call_timeout}s)"
        )
        return breaker

    def __getitem__(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(self._breakers.values())

    def open_circuits(self) -> list[str]:
        return [b.name for b in self if b.state is CircuitState.OPEN]

    def snapshot(self) -> dict[str, dict]:
        return {b.name: b.snapshot() for b in self}

    def report(self) -> None:
        """Log every breaker's state; warn about the ones that are open."""
        for name, snapshot in self.snapshot().items():
            logger.info(
                f"CircuitBreaker '{name}' state={snapshot['state']} "
                f"failures={snapshot['failure_count']} stats={snapshot['stats']}"
            )
        for name in self.open_circuits():
            logger.warning(f"Circuit breaker '{name}' is OPEN")
