import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from opsconsole.models import OrderFilters
from opsconsole.settings import settings
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("QueryCache")

QueryKey = Tuple[Any, ...]


class OrderKeys:
    LIST: QueryKey = ("orders", "list")
    DETAIL: QueryKey = ("order",)
    NEARBY: QueryKey = ("nearbyDrivers",)

    @staticmethod
    def for_list(filters: OrderFilters) -> QueryKey:
        return OrderKeys.LIST + (filters.cache_key(),)

    @staticmethod
    def for_detail(order_id: str) -> QueryKey:
        return OrderKeys.DETAIL + (order_id,)

    @staticmethod
    def for_nearby(order_id: str, lat: float, lng: float) -> QueryKey:
        return OrderKeys.NEARBY + (order_id, round(lat, 6), round(lng, 6))


def _matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    value: Any
    version: int
    fetched_at: float
    stale: bool = False


class QueryCache:
    """
    Read-through cache of query results keyed by tuples.

    Every fetch gets a monotonically increasing version. A result is stored only
    if no newer version is already stored, so a slow early response can never
    overwrite a faster later one. A fetch that was in flight when its key was
    invalidated is stored as stale.

    Entries fetched more than `max_age` seconds ago are evicted unless a fetch
    is in flight for them or a subscriber still watches them. Fetches sweep
    at most once per `max_age`.
    """
    def __init__(self, clock: Callable[[], float] = time.monotonic, max_age: Optional[float] = None):
        self._clock = clock
        self.max_age = max_age if max_age is not None else settings.CACHE_MAX_AGE_S
        self._last_sweep = clock()
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._in_flight: Dict[QueryKey, asyncio.Future] = {}
        self._invalidated: Dict[QueryKey, int] = {}
        self._version = 0
        self._subscribers: List[Tuple[QueryKey, Callable[[QueryKey], None]]] = []
        self._invalidations = MetricsManager().counter(
            "opsconsole_cache_invalidations_total", "Cache invalidations by key prefix", ["scope"]
        )

    def peek(self, key: QueryKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def get(self, key: QueryKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None else default

    def is_fresh(self, key: QueryKey, stale_time: float) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return False
        return (self._clock() - entry.fetched_at) < stale_time

    def set(self, key: QueryKey, value: Any) -> CacheEntry:
        self._version += 1
        return self._store(key, value, self._version)

    async def fetch(self,
                    key: QueryKey,
                    fetcher: Callable[[], Awaitable[Any]],
                    stale_time: float = 0.0,
                    force: bool = False) -> CacheEntry:
        """
        Return the cached entry while it is fresh, otherwise run `fetcher`.
        Concurrent fetches of the same key share one request.
        """
        if self._clock() - self._last_sweep >= self.max_age:
            self.evict()
        if not force and self.is_fresh(key, stale_time):
            return self._entries[key]

        pending = self._in_flight.get(key)
        if pending is None:
            self._version += 1
            pending = asyncio.ensure_future(self._run_fetch(key, fetcher, self._version))
            self._in_flight[key] = pending
        return await asyncio.shield(pending)

    async def _run_fetch(self, key: QueryKey, fetcher: Callable[[], Awaitable[Any]], version: int) -> CacheEntry:
        try:
            value = await fetcher()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
        return self._store(key, value, version)

    def _store(self, key: QueryKey, value: Any, version: int) -> CacheEntry:
        current = self._entries.get(key)
        if current is not None and current.version > version:
            logger.debug(f"Discarding out-of-order response for {key} (v{version} < v{current.version})")
            return current
        entry = CacheEntry(
            value=value,
            version=version,
            fetched_at=self._clock(),
            stale=version <= self._invalidated.get(key, 0),
        )
        self._entries[key] = entry
        return entry

    def mark_stale(self, key: QueryKey) -> None:
        """Force the next read of `key` to refetch, without notifying subscribers."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True

    def invalidate(self, prefix: QueryKey) -> List[QueryKey]:
        """
        Mark every entry under `prefix` stale, detach in-flight fetches for those
        keys and wake subscribers watching them. Returns the affected cached keys.
        """
        matched = [key for key in self._entries if _matches(key, prefix)]
        for key in matched:
            self._entries[key].stale = True
            self._invalidated[key] = self._version

        for key in [k for k in self._in_flight if _matches(k, prefix)]:
            # Results from requests issued before this point land as stale
            self._invalidated[key] = self._version
            del self._in_flight[key]

        self._invalidations.labels(scope=str(prefix[0])).inc()
        logger.debug(f"Invalidated {prefix}: {len(matched)} cached entries")

        for sub_key, callback in list(self._subscribers):
            if _matches(sub_key, prefix):
                callback(sub_key)
        return matched

    def subscribe(self, key: QueryKey, callback: Callable[[QueryKey], None]) -> Callable[[], None]:
        """Call `callback(key)` whenever an invalidation covers `key`."""
        item = (key, callback)
        self._subscribers.append(item)

        def unsubscribe() -> None:
            if item in self._subscribers:
                self._subscribers.remove(item)

        return unsubscribe

    def evict(self, max_age: Optional[float] = None) -> List[QueryKey]:
        """
        Drop entries fetched more than `max_age` seconds ago. Keys with a fetch
        in flight or a live subscriber are kept. Returns the evicted keys.
        """
        max_age = self.max_age if max_age is None else max_age
        now = self._clock()
        self._last_sweep = now
        watched = {sub_key for sub_key, _ in self._subscribers}
        evicted = [
            key for key, entry in self._entries.items()
            if now - entry.fetched_at > max_age and key not in self._in_flight and key not in watched
        ]
        for key in evicted:
            del self._entries[key]
        # Invalidation marks only matter while an entry or a fetch exists for the key
        for key in [k for k in self._invalidated if k not in self._entries and k not in self._in_flight]:
            del self._invalidated[key]
        if evicted:
            logger.debug(f"Evicted {len(evicted)} cache entries older than {max_age}s")
        return evicted

    def clear(self) -> None:
        self._entries.clear()
        self._invalidated.clear()


class Mutation(str, Enum):
    ASSIGN = "assign"
    BULK_ASSIGN = "bulk_assign"
    CANCEL = "cancel"
    BULK_CANCEL = "bulk_cancel"
    COMPLETE = "complete"
    PRIORITIZE = "prioritize"


LIST_SCOPE = "list"
DETAIL_SCOPE = "detail"

# Bulk mutations do not touch detail keys: no single detail view is guaranteed to exist.
INVALIDATION_RULES: Dict[Mutation, Tuple[str, ...]] = {
    Mutation.ASSIGN: (LIST_SCOPE, DETAIL_SCOPE),
    Mutation.BULK_ASSIGN: (LIST_SCOPE,),
    Mutation.CANCEL: (LIST_SCOPE, DETAIL_SCOPE),
    Mutation.BULK_CANCEL: (LIST_SCOPE,),
    Mutation.COMPLETE: (LIST_SCOPE, DETAIL_SCOPE),
    Mutation.PRIORITIZE: (LIST_SCOPE, DETAIL_SCOPE),
}


def invalidate_after(cache: QueryCache, mutation: Mutation, order_ids: Iterable[str]) -> List[QueryKey]:
    """
    Apply the rule table for a mutation the server has acknowledged.
    Returns the key prefixes that were invalidated.
    """
    targets: List[QueryKey] = []
    for scope in INVALIDATION_RULES[mutation]:
        if scope == LIST_SCOPE:
            targets.append(OrderKeys.LIST)
        else:
            targets.extend(OrderKeys.for_detail(order_id) for order_id in order_ids)
    for prefix in targets:
        cache.invalidate(prefix)
    return targets
