import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Optional

from cachetools import TLRUCache

from app.core.config import Settings

logger = logging.getLogger(__name__)

# observer(tier, event, key); event is one of CACHE_EVENTS
CacheObserver = Callable[[str, str, str], None]
CACHE_EVENTS = ("hit", "miss", "set", "delete", "expire", "evict")
DEFAULT_MAX_KEYS = 1000


@dataclass
class CacheEntry:
    key: str
    value: Any
    inserted_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        # ttl <= 0 keeps the entry until it is deleted or evicted
        if self.ttl <= 0:
            return math.inf
        return self.inserted_at + self.ttl


@dataclass(frozen=True)
class TierConfig:
    default_ttl: float
    max_keys: int


@dataclass
class TierStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    expired: int = 0
    evicted: int = 0


def _entry_expiry(_key: str, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


class _TierStore(TLRUCache):
    """TLRUCache that reports expirations and capacity evictions back to its tier.

    TLRUCache expires entries on every insert, not only when prune() runs,
    so expiry is reported from expire() itself.
    """

    def __init__(
        self,
        maxsize: int,
        timer: Callable[[], float],
        on_expire: Callable[[str], None],
        on_evict: Callable[[str], None],
    ):
        super().__init__(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self._on_expire = on_expire
        self._on_evict = on_evict

    def expire(self, time=None):
        expired = super().expire(time)
        for key, _entry in expired:
            self._on_expire(key)
        return expired

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(key)
        return key, entry


class CacheTier:
    """
    One independently configured cache partition.

    Expired entries are never returned, whether or not prune() has run.
    A full tier drops expired entries first, then the least recently used one.
    """

    def __init__(
        self,
        name: str,
        config: TierConfig,
        clock: Callable[[], float] = time.monotonic,
        notify: Optional[Callable[[str, str, str], None]] = None,
    ):
        if config.max_keys < 1:
            logger.error(
                f"Cache tier '{name}' has invalid max_keys={config.max_keys}, using {DEFAULT_MAX_KEYS}"
            )
            config = replace(config, max_keys=DEFAULT_MAX_KEYS)
        self.name = name
        self.config = config
        self._clock = clock
        self._notify = notify or (lambda *_: None)
        self.stats = TierStats()
        self._store = self._new_store()

    def _new_store(self) -> _TierStore:
        return _TierStore(self.config.max_keys, self._clock, self._expired, self._evicted)

    def _expired(self, key: str) -> None:
        self.stats.expired += 1
        self._notify(self.name, "expire", key)

    def _evicted(self, key: str) -> None:
        self.stats.evicted += 1
        self._notify(self.name, "evict", key)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._store.get(key)
        if entry is None:
            self.stats.misses += 1
            self._notify(self.name, "miss", key)
            return default
        self.stats.hits += 1
        self._notify(self.name, "hit", key)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.config.default_ttl if ttl is None else ttl
        self._store[key] = CacheEntry(key, value, self._clock(), ttl)
        self.stats.sets += 1
        self._notify(self.name, "set", key)

    def delete(self, key: str) -> None:
        if self._store.pop(key, None) is not None:
            self.stats.deletes += 1
            self._notify(self.name, "delete", key)

    def has(self, key: str) -> bool:
        return key in self._store

    def keys(self) -> list[str]:
        return [key for key in list(self._store.keys()) if key in self._store]

    def clear(self) -> None:
        self._store = self._new_store()

    def prune(self) -> int:
        return len(self._store.expire())

    def snapshot(self) -> dict:
        return {
            "keys": len(self.keys()),
            "max_keys": self.config.max_keys,
            "default_ttl": self.config.default_ttl,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "sets": self.stats.sets,
            "deletes": self.stats.deletes,
            "expired": self.stats.expired,
            "evicted": self.stats.evicted,
        }


DEFAULT_TIERS: dict[str, TierConfig] = {
    "main": TierConfig(default_ttl=300, max_keys=1000),
    "session": TierConfig(default_ttl=3600, max_keys=500),
    "ai": TierConfig(default_ttl=600, max_keys=200),
    "rate_limit": TierConfig(default_ttl=900, max_keys=5000),
}


class CacheManager:
    """
    Uniform get/set/delete/has/clear interface over named tiers.

    An unknown tier never raises: it is logged and treated as a miss
    (reads) or a failure (writes).
    """

    def __init__(
        self,
        tiers: Optional[dict[str, TierConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._observers: list[CacheObserver] = []
        self.global_stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}
        self.tiers: dict[str, CacheTier] = {
            name: CacheTier(name, config, clock=clock, notify=self._dispatch)
            for name, config in (tiers or DEFAULT_TIERS).items()
        }

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic):
        tiers = {
            name: TierConfig(default_ttl=ttl, max_keys=max_keys)
            for name, (ttl, max_keys) in settings.cache_tiers().items()
        }
        return cls(tiers, clock=clock)

    def subscribe(self, observer: CacheObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unregisters it."""
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def _dispatch(self, tier: str, event: str, key: str) -> None:
        global_key = {"hit": "hits", "miss": "misses", "set": "sets", "delete": "deletes"}.get(event)
        if global_key:
            self.global_stats[global_key] += 1
        for observer in list(self._observers):
            observer(tier, event, key)

    def _tier(self, tier: str) -> Optional[CacheTier]:
        found = self.tiers.get(tier)
        if found is None:
            logger.warning(f"Cache tier '{tier}' not found")
        return found

    def get(self, tier: str, key: str, default: Any = None) -> Any:
        cache = self._tier(tier)
        if cache is None:
            return default
        return cache.get(key, default)

    def set(self, tier: str, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        cache = self._tier(tier)
        if cache is None:
            return False
        cache.set(key, value, ttl)
        return True

    def delete(self, tier: str, key: str) -> bool:
        cache = self._tier(tier)
        if cache is None:
            return False
        cache.delete(key)
        return True

    def delete_matching(self, tier: str, fragment: str) -> int:
        """Delete every key in the tier containing ``fragment``."""
        cache = self._tier(tier)
        if cache is None:
            return 0
        matched = [key for key in cache.keys() if fragment in key]
        for key in matched:
            cache.delete(key)
        return len(matched)

    def has(self, tier: str, key: str) -> bool:
        cache = self._tier(tier)
        return cache.has(key) if cache is not None else False

    def clear(self, tier: str) -> bool:
        cache = self._tier(tier)
        if cache is None:
            return False
        cache.clear()
        return True

    def clear_all(self) -> None:
        for cache in self.tiers.values():
            cache.clear()

    def prune(self, tiers: Optional[Iterable[str]] = None) -> int:
        """Eagerly drop expired entries; returns how many were removed."""
        names = list(tiers) if tiers is not None else list(self.tiers)
        removed = 0
        for name in names:
            cache = self._tier(name)
            if cache is not None:
                removed += cache.prune()
        if removed:
            logger.debug(f"Pruned {removed} expired cache entries")
        return removed

    def stats(self) -> dict:
        return {
            "global": dict(self.global_stats),
            "tiers": {name: cache.snapshot() for name, cache in self.tiers.items()},
        }

