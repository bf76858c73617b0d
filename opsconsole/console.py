from typing import Any, Dict, Optional

from opsconsole.actions import OrderActions
from opsconsole.assignment import AssignmentCoordinator
from opsconsole.batch import BatchOperations
from opsconsole.cache import QueryCache
from opsconsole.collaborators import AllowAll, LoggingNotifier, Notifier, PermissionChecker
from opsconsole.models import OrderFilters
from opsconsole.query import OrderQueryService, OrderTab, filter_by_tab, tab_counts
from opsconsole.selection import BatchSelection
from opsconsole.settings import Settings, settings as default_settings
from opsconsole.transport import OrderTransport, build_transport
from opsconsole.utils.logging import get_logger
from opsconsole.utils.tracing import init_tracer

logger = get_logger("OrderConsole")


class OrderConsole:
    """
    Composition root for the order-management core.

    One console holds one cache, so every reader and writer built from it sees
    the same invalidations. Use it as an async context manager to make sure
    subscriptions and the transport are closed.
    """
    def __init__(self,
                 transport: Optional[OrderTransport] = None,
                 permissions: Optional[PermissionChecker] = None,
                 notifier: Optional[Notifier] = None,
                 config: Optional[Settings] = None,
                 cache: Optional[QueryCache] = None):
        self.config = config or default_settings
        init_tracer("opsconsole")

        self.transport = transport or build_transport(self.config)
        self.permissions = permissions or AllowAll()
        self.notifier = notifier or LoggingNotifier()
        self.cache = cache or QueryCache(max_age=self.config.CACHE_MAX_AGE_S)

        self.queries = OrderQueryService(
            self.transport,
            self.cache,
            list_stale_s=self.config.LIST_STALE_S,
            detail_stale_s=self.config.DETAIL_STALE_S,
            poll_interval_s=self.config.POLL_INTERVAL_S,
            list_refresh_s=self.config.LIST_REFRESH_S,
        )
        self.actions = OrderActions(self.transport, self.cache, self.permissions, self.notifier)
        self.selection = BatchSelection()
        self.batch = BatchOperations(self.selection, self.actions, self.new_assignment())

    def new_assignment(self) -> AssignmentCoordinator:
        """A fresh coordinator for one assignment surface (modal, CLI command...)."""
        return AssignmentCoordinator(
            self.transport,
            self.cache,
            permissions=self.permissions,
            notifier=self.notifier,
            nearby_stale_s=self.config.NEARBY_STALE_S,
            radius=self.config.NEARBY_RADIUS_M,
            limit=self.config.NEARBY_LIMIT,
        )

    async def load_view(self, filters: Optional[OrderFilters] = None,
                        tab: OrderTab = OrderTab.ALL) -> Dict[str, Any]:
        """List once, split by tab, and make the tab's orders the selectable set."""
        page = await self.queries.list_orders(filters)
        orders = filter_by_tab(page.items, tab)
        self.batch.set_view(orders)
        if page.is_synthetic:
            logger.warning("Showing synthetic orders: the order API is unavailable")
        return {"page": page, "orders": orders, "counts": tab_counts(page.items), "tab": tab}

    async def close(self) -> None:
        await self.queries.close()
        await self.transport.close()
        logger.info("Order console closed")

    async def __aenter__(self) -> "OrderConsole":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
