"""Fixed-window and point-budget admission control.

Both strategies keep their state in process memory and are evaluated
without any await between reading a window and updating it, so two
interleaved requests for the same key can never both pass a boundary.

Windows reset lazily on access; ``sweep()`` only reclaims memory for
idle keys.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_WINDOWS: dict[str, tuple[float, int]] = {
    "general": (15 * 60, 100),
    "auth": (15 * 60, 10),
    "tasks": (60, 30),
    "ai": (5 * 60, 5),
    "upload": (60 * 60, 10),
}

OPERATION_COSTS: dict[str, int] = {
    "read": 1,
    "write": 2,
    "delete": 3,
    "ai": 10,
    "auth": 5,
    "upload": 15,
}

METHOD_OPERATIONS: dict[str, str] = {
    "GET": "read",
    "HEAD": "read",
    "OPTIONS": "read",
    "POST": "write",
    "PUT": "write",
    "PATCH": "write",
    "DELETE": "delete",
}

POINTS_REASON = "rate_limit.points"
CONFIG_REASON = "rate_limit.config"


@dataclass
class RateWindow:
    window_seconds: float
    max: int
    window_start: float
    count: int = 0
    points: int = 0

    def expired(self, now: float) -> bool:
        return now > self.window_start + self.window_seconds

    def reset(self, now: float) -> None:
        self.count = 0
        self.points = 0
        self.window_start = now

    def seconds_left(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_seconds - now)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    key: str
    limit: int
    remaining: int
    retry_after: int = 0
    reason: Optional[str] = None


class RateLimiter:
    """
    Admission control keyed by caller identity.

    - ``check(route_class, identity)``: fixed window, ``max`` requests
      per ``window_seconds`` for each route class.
    - ``consume(identity, operation)``: point budget; every operation kind
      has a cost and a key may spend ``points_max`` per window.
    """

    def __init__(
        self,
        windows: Optional[dict[str, tuple[float, int]]] = None,
        points_window_seconds: float = 15 * 60,
        points_max: int = 100,
        costs: Optional[dict[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.windows = dict(windows or DEFAULT_WINDOWS)
        self.points_window_seconds = points_window_seconds
        self.points_max = points_max
        self.costs = dict(costs or OPERATION_COSTS)
        self._clock = clock
        self._state: dict[str, RateWindow] = {}
        self.rejections: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic):
        return cls(
            windows=settings.rate_limit_windows(),
            points_window_seconds=settings.points_window_seconds,
            points_max=settings.points_max,
            clock=clock,
        )

    @staticmethod
    def admission_key(route_class: str, identity: str) -> str:
        return f"{route_class}:{identity}"

    def cost(self, operation: str) -> int:
        # accepts operation kinds ("ai") as well as HTTP verbs ("POST")
        operation = METHOD_OPERATIONS.get(operation.upper(), operation.lower())
        return self.costs.get(operation, 1)

    def _window(self, key: str, window_seconds: float, limit: int, now: float) -> RateWindow:
        window = self._state.get(key)
        if window is None:
            window = RateWindow(window_seconds=window_seconds, max=limit, window_start=now)
            self._state[key] = window
        elif window.expired(now):
            window.reset(now)
        return window

    def _reject(self, key: str, limit: int, retry_after: float, reason: str) -> RateLimitDecision:
        self.rejections[reason] = self.rejections.get(reason, 0) + 1
        logger.warning(f"Rate limit exceeded for {key} ({reason})")
        return RateLimitDecision(
            allowed=False,
            key=key,
            limit=limit,
            remaining=0,
            retry_after=max(1, math.ceil(retry_after)),
            reason=reason,
        )

    def _misconfigured(self, key: str, window_seconds: float, limit: int) -> Optional[RateLimitDecision]:
        if window_seconds > 0 and limit > 0:
            return None
        logger.error(f"Invalid rate limit config for {key}: window={window_seconds} max={limit}")
        return self._reject(key, max(limit, 0), window_seconds if window_seconds > 0 else 60, CONFIG_REASON)

    def check(self, route_class: str, identity: str) -> RateLimitDecision:
        """Count one request against the fixed window of ``route_class``."""
        if route_class not in self.windows:
            logger.warning(f"Unknown rate limit class '{route_class}', using 'general'")
            route_class = "general"
        window_seconds, limit = self.windows[route_class]
        key = self.admission_key(route_class, identity)

        bad_config = self._misconfigured(key, window_seconds, limit)
        if bad_config:
            return bad_config

        now = self._clock()
        window = self._window(key, window_seconds, limit, now)
        if window.count >= limit:
            return self._reject(key, limit, window.seconds_left(now), f"rate_limit.{route_class}")

        window.count += 1
        return RateLimitDecision(allowed=True, key=key, limit=limit, remaining=limit - window.count)

    def consume(self, identity: str, operation: str) -> RateLimitDecision:
        """Spend the cost of ``operation`` from the caller's point budget."""
        key = self.admission_key("points", identity)
        bad_config = self._misconfigured(key, self.points_window_seconds, self.points_max)
        if bad_config:
            return bad_config

        cost = self.cost(operation)
        now = self._clock()
        window = self._window(key, self.points_window_seconds, self.points_max, now)
        if window.points + cost > self.points_max:
            return self._reject(key, self.points_max, window.seconds_left(now), POINTS_REASON)

        window.points += cost
        window.count += 1
        return RateLimitDecision(
            allowed=True,
            key=key,
            limit=self.points_max,
            remaining=self.points_max - window.points,
        )

    def peek(self, key: str) -> Optional[RateWindow]:
        return self._state.get(key)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._state.clear()
        else:
            self._state.pop(key, None)

    async def sweep(self, chunk_size: int = 500) -> int:
        """Drop windows whose period has elapsed, yielding between chunks."""
        keys = list(self._state)
        removed = 0
        for start in range(0, len(keys), chunk_size):
            now = self._clock()
            for key in keys[start:start + chunk_size]:
                window = self._state.get(key)
                if window is not None and window.expired(now):
                    del self._state[key]
                    removed += 1
            await asyncio.sleep(0)
        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} idle windows")
        return removed

    def stats(self) -> dict:
        return {
            "active_keys": len(self._state),
            "rejections": dict(self.rejections),
        }
