import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    SEARCHING = "Searching"
    ASSIGNED = "Assigned"
    ACCEPTED = "Accepted"
    EN_ROUTE = "EnRoute"
    ARRIVED = "Arrived"
    ON_TRIP = "OnTrip"
    IN_TRANSIT = "InTransit"
    COMPLETED = "Completed"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Priority(str, Enum):
    NORMAL = "Normal"
    HIGH = "High"
    URGENT = "Urgent"


class ServiceType(str, Enum):
    TAXI = "Taxi"
    MOTO = "Moto"
    DELIVERY = "Delivery"
    CAR = "Car"


class DriverStatus(str, Enum):
    ONLINE = "Online"
    ON_TRIP = "OnTrip"
    OFFLINE = "Offline"
    ON_BREAK = "OnBreak"


class ConsoleModel(BaseModel):
    """Base for wire-facing models: snake_case in Python, camelCase accepted from the API."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoPoint(ConsoleModel):
    lat: float
    lng: float


class Customer(ConsoleModel):
    customer_id: str = "unknown"
    name: str = "Unknown Customer"
    phone: str = ""
    email: str = ""
    rating: float = 5.0


class DriverInfo(ConsoleModel):
    driver_id: str
    name: str = "Unknown Driver"
    vehicle: str = ""
    phone: str = ""
    assigned_at: Optional[datetime] = None


class Unassigned(ConsoleModel):
    kind: Literal["unassigned"] = "unassigned"


class Assigned(ConsoleModel):
    kind: Literal["assigned"] = "assigned"
    driver: DriverInfo


DriverAssignment = Annotated[Union[Unassigned, Assigned], Field(discriminator="kind")]


class Waypoint(ConsoleModel):
    lat: float = 0.0
    lng: float = 0.0
    address: str = "Unknown Address"
    name: str = ""
    notes: str = ""

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)

    @property
    def has_location(self) -> bool:
        # 0,0 is what a record without coordinates maps to
        return bool(self.lat or self.lng)


class Route(ConsoleModel):
    pickup: Waypoint = Field(default_factory=Waypoint)
    dropoff: Waypoint = Field(default_factory=Waypoint)
    distance: float = 0.0               # meters
    estimated_duration: float = 0.0     # seconds
    actual_distance: Optional[float] = None
    actual_duration: Optional[float] = None


class Pricing(ConsoleModel):
    base_fare: float = 0.0
    distance_fare: float = 0.0
    time_fare: float = 0.0
    surge: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    payment_method: str = "Cash"
    is_paid: bool = False


class OrderTimeline(ConsoleModel):
    booked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    def stages(self) -> Dict[str, datetime]:
        """Lifecycle stage name -> timestamp, for the stages that have happened."""
        return {
            name[: -len("_at")]: value
            for name, value in self
            if name.endswith("_at") and value is not None
        }

    @property
    def closed_at(self) -> Optional[datetime]:
        return self.completed_at or self.cancelled_at


class OrderFlags(ConsoleModel):
    is_prioritized: bool = False
    is_scheduled: bool = False
    has_special_requirements: bool = False
    requires_verification: bool = False


class Order(ConsoleModel):
    """
    Canonical order shape. Built by `opsconsole.mapping` or the synthetic generator;
    the client never edits status or timeline, it only replaces whole orders with
    fresher server copies.
    """
    order_id: str = Field(frozen=True)
    transaction_id: str = ""
    status: OrderStatus
    raw_status: str = ""
    service_type: ServiceType = ServiceType.DELIVERY
    priority: Priority = Priority.NORMAL
    customer: Customer = Field(default_factory=Customer)
    driver_assignment: DriverAssignment = Field(default_factory=Unassigned)
    route: Route = Field(default_factory=Route)
    pricing: Pricing = Field(default_factory=Pricing)
    timeline: OrderTimeline = Field(default_factory=OrderTimeline)
    flags: OrderFlags = Field(default_factory=OrderFlags)
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    synthetic: bool = False

    @property
    def driver(self) -> Optional[DriverInfo]:
        if isinstance(self.driver_assignment, Assigned):
            return self.driver_assignment.driver
        return None


class NearbyDriver(ConsoleModel):
    driver_id: str
    rider_id: Optional[str] = None
    name: str = "Unknown Driver"
    status: DriverStatus = DriverStatus.ONLINE
    distance: float = 0.0           # meters
    estimated_arrival: float = 0.0  # seconds
    rating: float = 5.0
    vehicle_type: str = ""
    vehicle_plate: Optional[str] = None
    trust_score: float = 0.0

    @property
    def assignee_id(self) -> str:
        """Identifier the assign endpoint expects."""
        return self.rider_id or self.driver_id


class AssignmentRequest(ConsoleModel):
    order_ids: List[str] = Field(min_length=1)
    driver_id: str
    notes: Optional[str] = None

    @property
    def is_bulk(self) -> bool:
        return len(self.order_ids) > 1


class OrderFilters(ConsoleModel):
    status: Optional[List[OrderStatus]] = None
    service_type: Optional[List[ServiceType]] = None
    priority: Optional[List[Priority]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search_query: Optional[str] = None
    page_number: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)

    def cache_key(self) -> str:
        """Stable, hashable identity of the query."""
        return json.dumps(self.model_dump(mode="json", exclude_none=True), sort_keys=True)


class OrdersPage(ConsoleModel):
    items: List[Order] = Field(default_factory=list)
    total: int = 0
    page_number: int = 1
    page_size: int = 20
    total_pages: int = 0
    source: Literal["live", "synthetic"] = "live"
    fallback_reason: Optional[str] = None

    @property
    def is_synthetic(self) -> bool:
        return self.source == "synthetic"

    @staticmethod
    def pages_for(total: int, page_size: int) -> int:
        return math.ceil(total / page_size) if page_size else 0


class TransportResult(ConsoleModel):
    success: bool = True
    message: Optional[str] = None
    assignment_id: Optional[str] = None
    affected: int = 0
    failed_orders: List[str] = Field(default_factory=list)


class FailureReason(str, Enum):
    NO_ORDERS = "no_orders"
    NO_DRIVER_SELECTED = "no_driver_selected"
    MISSING_REASON = "missing_reason"
    NOT_ASSIGNABLE = "not_assignable"
    COMMIT_IN_PROGRESS = "commit_in_progress"
    PERMISSION_DENIED = "permission_denied"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"
    REJECTED = "rejected"


@dataclass(frozen=True)
class MutationOutcome:
    """
    Result of an operator-initiated write. Writes never raise to the caller;
    `reason` tells the presentation layer which specific message to show.
    """
    ok: bool
    message: str = ""
    reason: Optional[FailureReason] = None
    order_ids: Tuple[str, ...] = ()
    failed_orders: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def partial(self) -> bool:
        return self.ok and bool(self.failed_orders)

    @classmethod
    def failure(cls, reason: FailureReason, message: str, order_ids=()) -> "MutationOutcome":
        return cls(ok=False, reason=reason, message=message, order_ids=tuple(order_ids))
