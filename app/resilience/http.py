import logging
from typing import Any, Optional

import httpx

from app.core.errors import ServiceUnavailableError
from app.resilience.breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class OutboundClient:
    """
    HTTP calls to an external service, guarded by one circuit breaker.

    4xx/5xx responses count as failures (``raise_for_status``). The breaker's
    fallback never hides the primary error: callers see CircuitOpenError,
    OperationTimeoutError or the httpx error itself.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.breaker = breaker
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    async def request(self, method: str, url: str, **kwargs: Any) -> Any:
        async def operation():
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        # counted in total_fallbacks and chained as the __cause__ of the
        # primary error, which is what the caller receives
        async def fallback():
            raise ServiceUnavailableError("Service temporarily unavailable")

        return await self.breaker.execute(operation, fallback)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except httpx.HTTPError as e:
            logger.error(f"Error closing HTTP client for '{self.breaker.name}': {e}")
