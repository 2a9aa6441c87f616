import asyncio
import logging
from typing import Any, Awaitable, Callable

from app.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


async def retry_operation(
    operation: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    base_seconds: float = 1.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await ``operation`` up to ``attempts`` times with linear backoff
    (base_seconds, 2 * base_seconds, ...). The last error is re-raised.

    CircuitOpenError is never retried: the breaker already decided.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except CircuitOpenError:
            raise
        except retry_on as exc:
            if attempt >= attempts:
                raise
            wait = base_seconds * attempt
            logger.warning(f"Attempt {attempt}/{attempts} failed ({exc}), retrying in {wait:.1f}s")
            await sleep(wait)
