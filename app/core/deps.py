from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, Response, status

from app.core.container import Resilience
from app.core.errors import RateLimitExceeded
from app.ratelimit.limiter import RateLimitDecision, RateLimiter
from app.resilience.registry import BreakerRegistry

USER_HEADER = "X-User-Id"


def get_resilience(request: Request) -> Resilience:
    return request.app.state.resilience


def get_rate_limiter(resilience: Resilience = Depends(get_resilience)) -> RateLimiter:
    return resilience.limiter


def get_breakers(resilience: Resilience = Depends(get_resilience)) -> BreakerRegistry:
    return resilience.breakers


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Verified caller identity, forwarded by the authentication layer."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
        )
    return x_user_id


def client_identity(request: Request) -> str:
    """Caller id when authenticated, otherwise the network origin."""
    user_id = request.headers.get(USER_HEADER)
    if user_id:
        return f"user:{user_id}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit(route_class: str, operation: Optional[str] = None, points: bool = True):
    """
    Dependency factory: admit the request against the ``route_class`` window
    and, when ``points`` is set, charge the caller's point budget for
    ``operation`` (defaults to the HTTP method).
    """

    # async so admission runs on the event loop, never in the threadpool
    async def dependency(
        request: Request, limiter: RateLimiter = Depends(get_rate_limiter)
    ) -> RateLimitDecision:
        identity = client_identity(request)
        decision = limiter.check(route_class, identity)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        if points:
            spent = limiter.consume(identity, operation or request.method)
            if not spent.allowed:
                raise RateLimitExceeded(spent)
        return decision

    return dependency


def circuit_headers(name: str):
    """
    Dependency factory: expose a breaker's state in response headers.

    Never refuses the request. Cached reads must still be served while the
    circuit is open; a cache miss hits the breaker inside the service.
    """

    async def dependency(response: Response, breakers: BreakerRegistry = Depends(get_breakers)) -> None:
        breaker = breakers[name]
        response.headers["X-Circuit-State"] = breaker.state.value
        response.headers["X-Circuit-Failures"] = str(breaker.failure_count)

    return dependency
