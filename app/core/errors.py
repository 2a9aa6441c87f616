"""Typed errors raised by the resilience layer.

Callers can always tell an admission rejection, a circuit-open rejection,
a timeout and a genuine operation failure apart.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.ratelimit.limiter import RateLimitDecision


class RateLimitExceeded(Exception):
    """Admission rejected by the rate limiter."""

    def __init__(self, decision: "RateLimitDecision") -> None:
        self.decision = decision
        self.reason = decision.reason
        self.retry_after = decision.retry_after
        super().__init__(
            f"Rate limit exceeded ({decision.reason}), retry in {decision.retry_after}s"
        )


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is OPEN.

    This is not a failure of the dependency itself: the breaker refused to
    call it. ``retry_after`` is the remaining reset timeout in seconds.
    """

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit '{name}' is OPEN, will probe again in ~{math.ceil(self.retry_after)}s"
        )


class OperationTimeoutError(TimeoutError):
    """A guarded operation did not finish within the breaker's call timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Operation timeout on '{name}' after {timeout:.1f}s")


class ServiceUnavailableError(Exception):
    """Fallback failure used by outbound helpers with no degraded answer."""
