import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from opsconsole.errors import TransientTransportError
from opsconsole.models import (
    AssignmentRequest, GeoPoint, NearbyDriver, Order, OrderFilters, OrdersPage, Priority,
    TransportResult, utcnow,
)
from opsconsole.settings import settings
from opsconsole.transport.base import OrderTransport
from opsconsole.transport.synthetic import SyntheticOrderGenerator
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("FallbackTransport")

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackEvent:
    operation: str
    reason: str
    attempts: int
    at: datetime = field(default_factory=utcnow)


class FallbackOrderTransport(OrderTransport):
    """
    Wraps a live transport so that reads never fail on transient errors.

    Reads are retried with exponential backoff; once the attempts are spent the
    synthetic generator answers instead and the substitution is announced (log,
    metric, `fallback_count`, listeners, and `source="synthetic"` on pages).
    Authorization, not-found and rejected requests propagate untouched, and
    writes are passed straight through.
    """
    def __init__(self,
                 primary: OrderTransport,
                 generator: Optional[SyntheticOrderGenerator] = None,
                 retries: Optional[int] = None,
                 backoff_s: Optional[float] = None,
                 backoff_max_s: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.primary = primary
        self.generator = generator or SyntheticOrderGenerator()
        self.retries = max(1, retries if retries is not None else settings.READ_RETRIES)
        self.backoff_s = backoff_s if backoff_s is not None else settings.RETRY_BACKOFF_S
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else settings.RETRY_BACKOFF_MAX_S
        self._sleep = sleep

        self.fallback_count = 0
        self.last_fallback: Optional[FallbackEvent] = None
        self._listeners: List[Callable[[FallbackEvent], None]] = []

        metrics = MetricsManager()
        self._fallbacks = metrics.counter(
            "opsconsole_read_fallbacks_total", "Reads answered with synthetic data", ["operation"]
        )
        self._read_retries = metrics.counter(
            "opsconsole_read_retries_total", "Read attempts retried after a transient error", ["operation"]
        )

    def on_fallback(self, listener: Callable[[FallbackEvent], None]) -> None:
        self._listeners.append(listener)

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.backoff_s * (2 ** attempt), self.backoff_max_s)

    async def _read(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.retries):
            try:
                return await call()
            except TransientTransportError as e:
                if attempt + 1 >= self.retries:
                    raise
                delay = self.backoff_for(attempt)
                logger.info(f"{operation} failed ({e.code}), retry {attempt + 1}/{self.retries - 1} in {delay}s")
                self._read_retries.labels(operation=operation).inc()
                await self._sleep(delay)
        raise RuntimeError("unreachable")

    def _record_fallback(self, operation: str, error: TransientTransportError) -> FallbackEvent:
        event = FallbackEvent(operation=operation, reason=f"{error.code}: {error.message}", attempts=self.retries)
        self.fallback_count += 1
        self.last_fallback = event
        self._fallbacks.labels(operation=operation).inc()
        logger.warning(f"API failed for {operation}, falling back to synthetic data ({event.reason})")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Fallback listener failed: {e}")
        return event

    async def list_orders(self, filters: OrderFilters) -> OrdersPage:
        try:
            return await self._read("list_orders", lambda: self.primary.list_orders(filters))
        except TransientTransportError as e:
            event = self._record_fallback("list_orders", e)
            page = self.generator.page(filters.page_number, filters.page_size)
            page.fallback_reason = event.reason
            return page

    async def get_order(self, order_id: str) -> Order:
        try:
            return await self._read("get_order", lambda: self.primary.get_order(order_id))
        except TransientTransportError as e:
            self._record_fallback("get_order", e)
            return self.generator.order(order_id)

    async def nearby_drivers(self, order_id: str, location: GeoPoint, radius: int, limit: int) -> List[NearbyDriver]:
        # Retried, but never substituted: a synthetic driver must not be assignable.
        return await self._read(
            "nearby_drivers", lambda: self.primary.nearby_drivers(order_id, location, radius, limit)
        )

    async def assign(self, request: AssignmentRequest) -> TransportResult:
        return await self.primary.assign(request)

    async def bulk_assign(self, request: AssignmentRequest) -> TransportResult:
        return await self.primary.bulk_assign(request)

    async def cancel(self, order_id: str, reason: str) -> TransportResult:
        return await self.primary.cancel(order_id, reason)

    async def bulk_cancel(self, order_ids: Sequence[str], reason: str) -> TransportResult:
        return await self.primary.bulk_cancel(order_ids, reason)

    async def complete_order(self, order_id: str, notes: Optional[str] = None) -> TransportResult:
        return await self.primary.complete_order(order_id, notes)

    async def prioritize_order(self, order_id: str, priority: Priority, reason: Optional[str] = None) -> TransportResult:
        return await self.primary.prioritize_order(order_id, priority, reason)

    async def close(self) -> None:
        await self.primary.close()
