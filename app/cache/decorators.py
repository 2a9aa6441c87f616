from functools import wraps
from typing import Any, Callable, Optional


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dump(v) for v in value]
    return value


def async_cached(tier: str, key_builder: Callable[..., str], ttl: Optional[float] = None):
    """
    Decorator for async service methods. The instance must expose a
    ``cache`` (CacheManager); key_builder receives the same args/kwargs.
    Example:
      @async_cached("main", lambda self, task_id: f"user:{self.user_id}:task:{task_id}")
      async def get_task(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(self, *args, **kwargs)
            cached = self.cache.get(tier, key)
            if cached is not None:
                return cached

            value = await fn(self, *args, **kwargs)
            if value is None:
                return None
            value = _dump(value)
            self.cache.set(tier, key, value, ttl)
            return value

        return wrapper

    return decorator


def async_cached_expire(tier: str, fragment_builder: Callable[..., str]):
    """Drop every key containing the built fragment once the write succeeded."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            result = await fn(self, *args, **kwargs)
            self.cache.delete_matching(tier, fragment_builder(self, *args, **kwargs))
            return result

        return wrapper

    return decorator
