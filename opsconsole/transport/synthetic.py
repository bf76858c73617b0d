import random
import zlib
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional, Sequence

from opsconsole.models import (
    Assigned, AssignmentRequest, Customer, DriverInfo, DriverStatus, GeoPoint, NearbyDriver, Order,
    OrderFilters, OrdersPage, OrderStatus, OrderTimeline, Pricing, Priority, Route, ServiceType,
    TransportResult, Unassigned, Waypoint,
)
from opsconsole.settings import settings
from opsconsole.transport.base import OrderTransport
from opsconsole.utils.logging import get_logger

logger = get_logger("SyntheticOrders")

ORDER_PREFIX = "synthetic-order-"

# Cycled by absolute index so every page covers the same mix
STATUS_CYCLE = (
    OrderStatus.PENDING,
    OrderStatus.ASSIGNED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
)

# Makati / Manila
PICKUP_ORIGIN = GeoPoint(lat=14.5995, lng=120.9842)
DROPOFF_ORIGIN = GeoPoint(lat=14.6095, lng=120.9942)

_DRIVER_NAMES = ("Juan Dela Cruz", "Maria Santos", "Jose Reyes", "Ana Garcia", "Pedro Bautista",
                 "Rosa Mendoza", "Carlo Ramos", "Liza Torres", "Miguel Flores", "Grace Aquino",
                 "Paolo Navarro", "Nina Castillo")
_VEHICLES = ("Motorcycle", "Sedan", "SUV", "Van")


def _today_anchor() -> datetime:
    return datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)


def _stable_seed(text: str) -> int:
    return zlib.crc32(text.encode("utf-8"))


def _row_rng(page_number: int, page_size: int, index: int) -> random.Random:
    return random.Random(f"{page_number}:{page_size}:{index}")


class SyntheticOrderGenerator:
    """
    Deterministic stand-in data for when the order API is unavailable (or in demo mode).

    The same (page_number, page_size) always yields the same page and the same
    order id always yields the same order, relative to `anchor`. A generated id
    resolves to the row the list shows for it at `page_size`. Filters are
    deliberately ignored: the output is a placeholder, not a search result.
    """
    def __init__(self,
                 total: Optional[int] = None,
                 anchor: Optional[datetime] = None,
                 page_size: Optional[int] = None):
        self.total = total if total is not None else settings.SYNTHETIC_TOTAL
        self.page_size = page_size or settings.DEFAULT_PAGE_SIZE
        self.anchor = anchor or _today_anchor()

    def page(self, page_number: int, page_size: int) -> OrdersPage:
        start = (page_number - 1) * page_size
        end = min(start + page_size, self.total)
        items = [self._build(index, _row_rng(page_number, page_size, index))
                 for index in range(start, end)]
        return OrdersPage(
            items=items,
            total=self.total,
            page_number=page_number,
            page_size=page_size,
            total_pages=OrdersPage.pages_for(self.total, page_size),
            source="synthetic",
        )

    def order(self, order_id: str) -> Order:
        suffix = order_id[len(ORDER_PREFIX):] if order_id.startswith(ORDER_PREFIX) else ""
        if suffix.isdigit():
            index = int(suffix)
            rng = _row_rng(index // self.page_size + 1, self.page_size, index)
        else:
            index = _stable_seed(order_id) % max(self.total, 1)
            rng = random.Random(f"order:{order_id}")
        order = self._build(index, rng)
        if order.order_id != order_id:
            order = order.model_copy(update={"order_id": order_id})
        return order

    def nearby(self, order_id: str, location: GeoPoint, radius: int, limit: int) -> List[NearbyDriver]:
        rng = random.Random(f"nearby:{order_id}")
        drivers = []
        for i, name in enumerate(_DRIVER_NAMES):
            distance = round(rng.uniform(150, 8000), 1)
            drivers.append(NearbyDriver(
                driver_id=f"synthetic-driver-{i + 1}",
                rider_id=f"synthetic-rider-{i + 1}",
                name=name,
                status=DriverStatus.ONLINE if rng.random() > 0.2 else DriverStatus.ON_BREAK,
                distance=distance,
                # ~25 km/h through city traffic
                estimated_arrival=round(distance / 7.0),
                rating=round(rng.uniform(3.8, 5.0), 1),
                vehicle_type=rng.choice(_VEHICLES),
                vehicle_plate=f"ABC {1000 + i * 37}",
                trust_score=round(rng.uniform(60, 100), 1),
            ))
        in_range = sorted((d for d in drivers if d.distance <= radius), key=lambda d: d.distance)
        return in_range[:limit]

    def _build(self, index: int, rng: random.Random) -> Order:
        status = STATUS_CYCLE[index % len(STATUS_CYCLE)]
        created = self.anchor - timedelta(seconds=rng.randint(600, 86_400))
        pickup = Waypoint(
            lat=PICKUP_ORIGIN.lat + rng.random() * 0.01,
            lng=PICKUP_ORIGIN.lng + rng.random() * 0.01,
            address=f"Pickup Address {index + 1}, Makati City",
            name=f"Customer {index + 1}",
        )
        dropoff = Waypoint(
            lat=DROPOFF_ORIGIN.lat + rng.random() * 0.01,
            lng=DROPOFF_ORIGIN.lng + rng.random() * 0.01,
            address=f"Dropoff Address {index + 1}, Manila City",
        )
        distance_fare = float(rng.randint(0, 300))
        time_fare = float(rng.randint(0, 100))

        timeline = OrderTimeline(booked_at=created, created_at=created)
        assignment = Unassigned()
        if status != OrderStatus.PENDING and status != OrderStatus.CANCELLED:
            assigned_at = created + timedelta(minutes=2)
            timeline.assigned_at = assigned_at
            timeline.accepted_at = assigned_at + timedelta(minutes=1)
            assignment = Assigned(driver=DriverInfo(
                driver_id=f"synthetic-driver-{index % len(_DRIVER_NAMES) + 1}",
                name=_DRIVER_NAMES[index % len(_DRIVER_NAMES)],
                vehicle=_VEHICLES[index % len(_VEHICLES)],
                assigned_at=assigned_at,
            ))
        if status == OrderStatus.IN_TRANSIT:
            timeline.arrived_at = created + timedelta(minutes=8)
            timeline.picked_up_at = created + timedelta(minutes=10)
        if status == OrderStatus.DELIVERED:
            timeline.picked_up_at = created + timedelta(minutes=10)
            timeline.delivered_at = timeline.completed_at = created + timedelta(minutes=30)
        if status == OrderStatus.CANCELLED:
            timeline.cancelled_at = created + timedelta(minutes=5)
            timeline.cancelled_by = "Customer"
            timeline.cancellation_reason = "Changed plans"

        updated = timeline.closed_at or self.anchor
        return Order(
            order_id=f"{ORDER_PREFIX}{index}",
            transaction_id=f"txn-{index}",
            status=status,
            raw_status=status.value,
            service_type=ServiceType.DELIVERY if index % 2 == 0 else ServiceType.TAXI,
            priority=Priority.NORMAL,
            customer=Customer(
                customer_id=f"cust-{index}",
                name=f"Customer {index + 1}",
                phone=f"+639{rng.randint(0, 999_999_999):09d}",
                email=f"customer{index + 1}@example.com",
            ),
            driver_assignment=assignment,
            route=Route(pickup=pickup, dropoff=dropoff, distance=5000, estimated_duration=1200),
            pricing=Pricing(
                base_fare=50,
                distance_fare=distance_fare,
                time_fare=time_fare,
                total=50 + distance_fare + time_fare,
            ),
            timeline=timeline,
            created_at=created,
            updated_at=updated,
            synthetic=True,
        )


class SyntheticOrderTransport(OrderTransport):
    """
    Demo/offline transport: every read comes from the generator and every write
    is acknowledged without side effects.
    """
    def __init__(self, generator: Optional[SyntheticOrderGenerator] = None):
        self.generator = generator or SyntheticOrderGenerator()

    async def list_orders(self, filters: OrderFilters) -> OrdersPage:
        return self.generator.page(filters.page_number, filters.page_size)

    async def get_order(self, order_id: str) -> Order:
        return self.generator.order(order_id)

    def _ack(self, operation: str, order_ids: Sequence[str]) -> TransportResult:
        logger.info(f"Demo mode: acknowledged {operation} for {len(order_ids)} order(s)")
        return TransportResult(success=True, message=f"{operation} simulated", affected=len(order_ids))

    async def assign(self, request: AssignmentRequest) -> TransportResult:
        result = self._ack("assign", request.order_ids)
        result.assignment_id = f"synthetic-assignment-{request.order_ids[0]}"
        return result

    async def bulk_assign(self, request: AssignmentRequest) -> TransportResult:
        return self._ack("bulk assign", request.order_ids)

    async def cancel(self, order_id: str, reason: str) -> TransportResult:
        return self._ack("cancel", [order_id])

    async def bulk_cancel(self, order_ids: Sequence[str], reason: str) -> TransportResult:
        return self._ack("bulk cancel", order_ids)

    async def nearby_drivers(self, order_id: str, location: GeoPoint, radius: int, limit: int) -> List[NearbyDriver]:
        return self.generator.nearby(order_id, location, radius, limit)

    async def complete_order(self, order_id: str, notes: Optional[str] = None) -> TransportResult:
        return self._ack("complete", [order_id])

    async def prioritize_order(self, order_id: str, priority: Priority, reason: Optional[str] = None) -> TransportResult:
        return self._ack("prioritize", [order_id])
