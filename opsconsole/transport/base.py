from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from opsconsole.models import (
    AssignmentRequest, GeoPoint, NearbyDriver, Order, OrderFilters, OrdersPage, Priority,
    TransportResult,
)


class OrderTransport(ABC):
    """
    Abstract access to the remote order API.

    Reads return canonical models; writes return the server's acknowledgement.
    Implementations raise `opsconsole.errors.TransportError` subclasses on failure
    and never retry writes.
    """

    @abstractmethod
    async def list_orders(self, filters: OrderFilters) -> OrdersPage:
        """Fetch one page of orders matching `filters`."""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        """Fetch a single order. Raises NotFoundError if it does not exist."""
        pass

    @abstractmethod
    async def assign(self, request: AssignmentRequest) -> TransportResult:
        """Bind a driver to exactly one order."""
        pass

    @abstractmethod
    async def bulk_assign(self, request: AssignmentRequest) -> TransportResult:
        """Bind a driver to several orders in one call."""
        pass

    @abstractmethod
    async def cancel(self, order_id: str, reason: str) -> TransportResult:
        pass

    @abstractmethod
    async def bulk_cancel(self, order_ids: Sequence[str], reason: str) -> TransportResult:
        pass

    @abstractmethod
    async def nearby_drivers(self,
                             order_id: str,
                             location: GeoPoint,
                             radius: int,
                             limit: int) -> List[NearbyDriver]:
        """Candidate drivers around `location`, nearest first."""
        pass

    @abstractmethod
    async def complete_order(self, order_id: str, notes: Optional[str] = None) -> TransportResult:
        pass

    @abstractmethod
    async def prioritize_order(self, order_id: str, priority: Priority,
                               reason: Optional[str] = None) -> TransportResult:
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
