import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from app.cache.manager import CacheManager
from app.core.config import Settings
from app.core.scheduler import PeriodicTask
from app.ratelimit.limiter import RateLimiter
from app.resilience.http import OutboundClient
from app.resilience.registry import BreakerRegistry

logger = logging.getLogger(__name__)


@dataclass
class Resilience:
    """
    Process-wide resilience components, built once in the app lifespan
    and handed to request handlers through FastAPI dependencies.
    """

    settings: Settings
    cache: CacheManager
    limiter: RateLimiter
    breakers: BreakerRegistry
    outbound: dict[str, OutboundClient]
    jobs: list[PeriodicTask] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def build(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "Resilience":
        cache = CacheManager.from_settings(settings, clock=clock)
        limiter = RateLimiter.from_settings(settings, clock=clock)
        breakers = BreakerRegistry.from_settings(settings, clock=clock)
        outbound = {
            "ai": OutboundClient(breakers["ai"], client=http_client),
            "generic": OutboundClient(breakers["generic"], client=http_client),
        }
        resilience = cls(settings, cache, limiter, breakers, outbound)
        resilience.jobs = [
            PeriodicTask("cache-prune", settings.cache_prune_interval_seconds, cache.prune),
            PeriodicTask("rate-limit-sweep", settings.rate_limit_sweep_interval_seconds, limiter.sweep),
            PeriodicTask("breaker-report", settings.breaker_report_interval_seconds, breakers.report),
            PeriodicTask("cache-report", settings.cache_report_interval_seconds, resilience.log_cache_stats),
        ]
        return resilience

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
        for client in self.outbound.values():
            await client.close()

    def log_cache_stats(self) -> None:
        logger.info(f"Cache stats: {self.cache.stats()}")

    def health(self) -> dict:
        open_circuits = self.breakers.open_circuits()
        return {
            "status": "degraded" if open_circuits else "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "open_circuits": open_circuits,
            "circuit_breakers": self.breakers.snapshot(),
            "cache": self.cache.stats(),
            "rate_limiter": self.limiter.stats(),
        }
