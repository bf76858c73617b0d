import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional

from opsconsole.cache import CacheEntry, OrderKeys, QueryCache, QueryKey
from opsconsole.errors import (
    AuthorizationError, NotFoundError, OpsConsoleError, TransientTransportError, TransportError,
)
from opsconsole.models import Order, OrderFilters, OrdersPage, OrderStatus
from opsconsole.settings import settings
from opsconsole.status import ACTIVE_STATUSES, StatusChangeTracker, should_poll
from opsconsole.transport.base import OrderTransport
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("OrderQuery")


class OrderTab(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TAB_STATUSES: Dict[OrderTab, FrozenSet[OrderStatus]] = {
    OrderTab.ACTIVE: ACTIVE_STATUSES,
    OrderTab.COMPLETED: frozenset({OrderStatus.COMPLETED, OrderStatus.DELIVERED}),
    OrderTab.CANCELLED: frozenset({OrderStatus.CANCELLED}),
}


def filter_by_tab(orders: Iterable[Order], tab: OrderTab) -> List[Order]:
    if tab == OrderTab.ALL:
        return list(orders)
    statuses = TAB_STATUSES[tab]
    return [order for order in orders if order.status in statuses]


def tab_counts(orders: Iterable[Order]) -> Dict[OrderTab, int]:
    orders = list(orders)
    return {tab: len(filter_by_tab(orders, tab)) for tab in OrderTab}


class DegradedResponse(OpsConsoleError):
    """
    A read came back synthetic while live data for the same key is cached.
    Raised from inside the cache fetcher so the live entry is not overwritten.
    """
    def __init__(self, synthetic: Any, cached: Any):
        super().__init__("synthetic response while live data is cached")
        self.synthetic = synthetic
        self.cached = cached


def _page_degraded(page: OrdersPage) -> bool:
    return page.is_synthetic or page.fallback_reason is not None


def _order_degraded(order: Order) -> bool:
    return order.synthetic


class PollingSubscription:
    """
    Periodic refresh of one cache key, driven by a single background task.

    Ticks never overlap: the next wait starts only after the previous fetch
    resolved. Invalidating the key through the cache wakes the loop at once.
    Subclasses decide whether to keep polling after each applied value.
    """
    kind = "query"

    def __init__(self,
                 cache: QueryCache,
                 key: QueryKey,
                 load: Callable[[], Awaitable[CacheEntry]],
                 interval: float,
                 on_update: Optional[Callable[[Any], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.cache = cache
        self.key = key
        self.interval = interval
        self._load = load
        self._on_update = on_update
        self._on_error = on_error

        self.value: Any = None
        self.version = 0
        self.error: Optional[Exception] = None
        self.fetch_count = 0
        self.is_polling = False
        self.stopped = False

        self._closed = False
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe = cache.subscribe(key, self._on_invalidate)
        self._ticks = MetricsManager().counter(
            "opsconsole_poll_ticks_total", "Polling fetches by subscription kind and result", ["kind", "result"]
        )

    def start(self) -> "PollingSubscription":
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    @property
    def closed(self) -> bool:
        return self._closed

    def refresh(self) -> None:
        """Request an immediate fetch, restarting polling if it had paused."""
        self._wake.set()

    def _on_invalidate(self, key: QueryKey) -> None:
        if not self._closed and not self.stopped:
            logger.debug(f"{self.kind} subscription {key} invalidated, refetching")
            self._wake.set()

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until the current (or first) fetch has been applied."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def _run(self) -> None:
        try:
            while not self._closed and not self.stopped:
                self._wake.clear()
                self._idle.clear()
                try:
                    self.is_polling = await self._tick()
                except Exception as e:
                    # Raised by a caller-supplied callback
                    logger.error(f"{self.kind} subscription {self.key} callback failed: {e!r}", exc_info=True)
                    self.is_polling = self._keep_polling(self.value)
                self._idle.set()
                if self.stopped:
                    break
                if self.is_polling:
                    try:
                        await asyncio.wait_for(self._wake.wait(), self.interval)
                    except asyncio.TimeoutError:
                        pass
                else:
                    # Paused; only an explicit refresh or invalidation resumes it
                    await self._wake.wait()
        except asyncio.CancelledError:
            pass
        finally:
            self.is_polling = False
            self._idle.set()

    async def _tick(self) -> bool:
        self.fetch_count += 1
        try:
            entry = await self._load()
        except (AuthorizationError, NotFoundError) as e:
            logger.warning(f"Stopping {self.kind} subscription {self.key}: {e}")
            self._ticks.labels(kind=self.kind, result="stopped").inc()
            self._fail(e)
            self.stopped = True
            self._unsubscribe()
            return False
        except DegradedResponse:
            logger.warning(f"{self.kind} refresh for {self.key} returned synthetic data, keeping last live value")
            self._ticks.labels(kind=self.kind, result="degraded").inc()
            return self._keep_polling(self.value)
        except TransportError as e:
            logger.warning(f"{self.kind} refresh for {self.key} failed: {e}")
            self._ticks.labels(kind=self.kind, result="error").inc()
            self._fail(e)
            return self._keep_polling(self.value)
        except Exception as e:
            logger.error(f"{self.kind} refresh for {self.key} raised {e!r}", exc_info=True)
            self._ticks.labels(kind=self.kind, result="error").inc()
            self._fail(e)
            return self._keep_polling(self.value)

        if entry.version <= self.version:
            logger.debug(f"Ignoring stale response v{entry.version} for {self.key} (applied v{self.version})")
            self._ticks.labels(kind=self.kind, result="ignored").inc()
            return self._keep_polling(self.value)

        if self._degraded(entry.value) and self.value is not None and not self._degraded(self.value):
            self._ticks.labels(kind=self.kind, result="degraded").inc()
            return self._keep_polling(self.value)

        self.version = entry.version
        self.value = entry.value
        self.error = None
        self._ticks.labels(kind=self.kind, result="ok").inc()
        self._apply(entry.value)
        return self._keep_polling(entry.value)

    def _fail(self, error: Exception) -> None:
        self.error = error
        if self._on_error:
            self._on_error(error)

    def _apply(self, value: Any) -> None:
        if self._on_update:
            self._on_update(value)

    def _degraded(self, value: Any) -> bool:
        return False

    def _keep_polling(self, value: Any) -> bool:
        return True

    async def close(self) -> None:
        """Stop immediately; no fetch is started after this returns."""
        if self._closed:
            return
        self._closed = True
        self.is_polling = False
        self._unsubscribe()
        if self._task is not None:
            self._task.cancel()
            # Collects the task without re-raising whatever ended it
            await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self):
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class DetailSubscription(PollingSubscription):
    """
    Polls one order while it is dispatching or on the road.

    The decision is re-made from the status each fetch returns, so a terminal
    status stops the loop without another tick being scheduled.
    """
    kind = "detail"

    def __init__(self,
                 cache: QueryCache,
                 order_id: str,
                 load: Callable[[], Awaitable[CacheEntry]],
                 interval: float,
                 on_update: Optional[Callable[[Order], None]] = None,
                 on_status_change: Optional[Callable[[OrderStatus, OrderStatus], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        super().__init__(cache, OrderKeys.for_detail(order_id), load, interval, on_update, on_error)
        self.order_id = order_id
        self.tracker = StatusChangeTracker()
        self._on_status_change = on_status_change

    @property
    def order(self) -> Optional[Order]:
        return self.value

    def _apply(self, order: Order) -> None:
        change = self.tracker.observe(order.status)
        super()._apply(order)
        if change is not None:
            new, old = change
            logger.info(f"Order {self.order_id} status changed: {old.value} -> {new.value}")
            if self._on_status_change:
                self._on_status_change(new, old)

    def _degraded(self, order: Order) -> bool:
        return _order_degraded(order)

    def _keep_polling(self, order: Optional[Order]) -> bool:
        if order is None:
            # Nothing loaded yet; keep trying
            return True
        keep = should_poll(order.status)
        if not keep and self.is_polling:
            logger.info(f"Order {self.order_id} is {order.status.value}, polling stopped")
        return keep


class ListSubscription(PollingSubscription):
    """Refreshes one list query on a fixed interval until closed."""
    kind = "list"

    def __init__(self,
                 cache: QueryCache,
                 filters: OrderFilters,
                 load: Callable[[], Awaitable[CacheEntry]],
                 interval: float,
                 on_update: Optional[Callable[[OrdersPage], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None):
        super().__init__(cache, OrderKeys.for_list(filters), load, interval, on_update, on_error)
        self.filters = filters

    @property
    def page(self) -> Optional[OrdersPage]:
        return self.value

    def _degraded(self, page: OrdersPage) -> bool:
        return _page_degraded(page)


class OrderQueryService:
    """
    Cached reads of orders and the subscriptions that keep them fresh.

    Transient failures degrade to the last cached value (or propagate when
    nothing is cached); authorization and not-found errors always propagate.
    """
    def __init__(self,
                 transport: OrderTransport,
                 cache: Optional[QueryCache] = None,
                 list_stale_s: Optional[float] = None,
                 detail_stale_s: Optional[float] = None,
                 poll_interval_s: Optional[float] = None,
                 list_refresh_s: Optional[float] = None):
        self.transport = transport
        self.cache = cache or QueryCache()
        self.list_stale_s = list_stale_s if list_stale_s is not None else settings.LIST_STALE_S
        self.detail_stale_s = detail_stale_s if detail_stale_s is not None else settings.DETAIL_STALE_S
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.POLL_INTERVAL_S
        self.list_refresh_s = list_refresh_s if list_refresh_s is not None else settings.LIST_REFRESH_S
        self._subscriptions: List[PollingSubscription] = []

    def default_filters(self) -> OrderFilters:
        return OrderFilters(page_size=settings.DEFAULT_PAGE_SIZE)

    async def _list_entry(self, filters: OrderFilters, force: bool = False) -> CacheEntry:
        key = OrderKeys.for_list(filters)

        async def fetcher() -> OrdersPage:
            page = await self.transport.list_orders(filters)
            if _page_degraded(page):
                cached = self.cache.peek(key)
                if cached is not None and not _page_degraded(cached.value):
                    raise DegradedResponse(page, cached.value)
            return page

        entry = await self.cache.fetch(key, fetcher, self.list_stale_s, force)
        if _page_degraded(entry.value):
            self.cache.mark_stale(key)
        return entry

    async def _detail_entry(self, order_id: str, force: bool = False) -> CacheEntry:
        key = OrderKeys.for_detail(order_id)

        async def fetcher() -> Order:
            order = await self.transport.get_order(order_id)
            if _order_degraded(order):
                cached = self.cache.peek(key)
                if cached is not None and not _order_degraded(cached.value):
                    raise DegradedResponse(order, cached.value)
            return order

        entry = await self.cache.fetch(key, fetcher, self.detail_stale_s, force)
        if _order_degraded(entry.value):
            self.cache.mark_stale(key)
        return entry

    async def list_orders(self, filters: Optional[OrderFilters] = None, force: bool = False) -> OrdersPage:
        filters = filters or self.default_filters()
        key = OrderKeys.for_list(filters)
        try:
            entry = await self._list_entry(filters, force)
        except DegradedResponse as e:
            logger.warning("Order list fell back to synthetic data; serving the last live page")
            self.cache.mark_stale(key)
            return e.cached
        except TransientTransportError as e:
            cached = self.cache.peek(key)
            if cached is None:
                raise
            logger.warning(f"Order list refresh failed ({e.code}); serving cached page")
            return cached.value
        return entry.value

    async def tab_view(self, filters: Optional[OrderFilters] = None,
                       tab: OrderTab = OrderTab.ALL) -> Dict[str, Any]:
        """One list read, split client-side into the tab's orders and per-tab counts."""
        page = await self.list_orders(filters)
        return {
            "page": page,
            "orders": filter_by_tab(page.items, tab),
            "counts": tab_counts(page.items),
        }

    async def get_order(self, order_id: str, force: bool = False) -> Order:
        key = OrderKeys.for_detail(order_id)
        try:
            entry = await self._detail_entry(order_id, force)
        except DegradedResponse as e:
            logger.warning(f"Order {order_id} fell back to synthetic data; serving the last live copy")
            self.cache.mark_stale(key)
            return e.cached
        except TransientTransportError as e:
            cached = self.cache.peek(key)
            if cached is None:
                raise
            logger.warning(f"Order {order_id} refresh failed ({e.code}); serving cached copy")
            return cached.value
        return entry.value

    def watch_order(self,
                    order_id: str,
                    on_update: Optional[Callable[[Order], None]] = None,
                    on_status_change: Optional[Callable[[OrderStatus, OrderStatus], None]] = None,
                    on_error: Optional[Callable[[Exception], None]] = None,
                    poll_interval: Optional[float] = None) -> DetailSubscription:
        """Start polling one order. Close the subscription when the view goes away."""
        sub = DetailSubscription(
            self.cache,
            order_id,
            lambda: self._detail_entry(order_id, force=True),
            poll_interval if poll_interval is not None else self.poll_interval_s,
            on_update=on_update,
            on_status_change=on_status_change,
            on_error=on_error,
        )
        self._subscriptions = [s for s in self._subscriptions if not s.closed]
        self._subscriptions.append(sub)
        return sub.start()

    def watch_list(self,
                   filters: Optional[OrderFilters] = None,
                   on_update: Optional[Callable[[OrdersPage], None]] = None,
                   on_error: Optional[Callable[[Exception], None]] = None,
                   refresh_interval: Optional[float] = None) -> ListSubscription:
        filters = filters or self.default_filters()
        sub = ListSubscription(
            self.cache,
            filters,
            lambda: self._list_entry(filters, force=True),
            refresh_interval if refresh_interval is not None else self.list_refresh_s,
            on_update=on_update,
            on_error=on_error,
        )
        self._subscriptions = [s for s in self._subscriptions if not s.closed]
        self._subscriptions.append(sub)
        return sub.start()

    async def close(self) -> None:
        for sub in self._subscriptions:
            await sub.close()
        self._subscriptions.clear()
