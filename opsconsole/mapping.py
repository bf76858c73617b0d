"""
Normalization of upstream order payloads into the canonical `Order`.

The API has shipped orders in two dialects: the adapter's snake_case records and
camelCase records mirroring the console's own types. `map_upstream_order` accepts
either, fills neutral defaults for anything missing, and repairs records that
violate the lifecycle invariants instead of rejecting them.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from opsconsole.models import (
    Assigned, Customer, DriverInfo, Order, OrderFlags, OrderStatus, OrderTimeline,
    Pricing, Priority, Route, ServiceType, Unassigned, Waypoint, utcnow,
)
from opsconsole.status import PRE_ASSIGNMENT_STATUSES, TERMINAL_STATUSES
from opsconsole.utils.logging import get_logger

logger = get_logger("mapping")

_STATUS_ALIASES: Dict[str, OrderStatus] = {
    "PENDING": OrderStatus.PENDING,
    "NEW": OrderStatus.PENDING,
    "SCHEDULED": OrderStatus.SCHEDULED,
    "SEARCHING": OrderStatus.SEARCHING,
    "ASSIGNED": OrderStatus.ASSIGNED,
    "ACCEPTED": OrderStatus.ACCEPTED,
    "ENROUTE": OrderStatus.EN_ROUTE,
    "ARRIVED": OrderStatus.ARRIVED,
    "ONTRIP": OrderStatus.ON_TRIP,
    "INTRANSIT": OrderStatus.IN_TRANSIT,
    "COMPLETED": OrderStatus.COMPLETED,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
}

_TIMELINE_FIELDS = (
    "booked_at", "created_at", "scheduled_at", "assigned_at", "accepted_at", "arrived_at",
    "picked_up_at", "delivered_at", "completed_at", "cancelled_at",
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _pick(data: Optional[Mapping[str, Any]], *names: str, default: Any = None) -> Any:
    """First non-empty value among `names`, trying each as given and in camelCase."""
    if not data:
        return default
    for name in names:
        for key in (name, _camel(name)):
            value = data.get(key)
            if value is not None and value != "":
                return value
    return default


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Non-numeric value {value!r} replaced with {default}")
        return default


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        logger.warning(f"Boolean timestamp {value!r} ignored")
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning(f"Out-of-range epoch timestamp {value!r} ignored")
            return None
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp {value!r} ignored")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum(enum_cls, value: Any, default):
    if value is None:
        return default
    for member in enum_cls:
        if str(value).lower() == member.value.lower():
            return member
    return default


def map_status(raw: Any) -> Optional[OrderStatus]:
    """Canonical status for an upstream value, None when unrecognised."""
    if raw is None:
        return None
    key = str(raw).upper().replace("_", "").replace("-", "").replace(" ", "")
    return _STATUS_ALIASES.get(key)


def _waypoint(data: Any, fallback_name: str = "") -> Waypoint:
    if isinstance(data, str):
        data = {"address": data}
    elif not isinstance(data, Mapping):
        data = None
    return Waypoint(
        lat=_number(_pick(data, "lat", "latitude")),
        lng=_number(_pick(data, "lng", "longitude", "lon")),
        address=str(_pick(data, "address", default="Unknown Address")),
        name=str(_pick(data, "name", "contact_name", default=fallback_name)),
        notes=str(_pick(data, "notes", default="")),
    )


def _driver(data: Mapping[str, Any], timeline: OrderTimeline) -> Optional[DriverInfo]:
    nested = data.get("driver") if isinstance(data.get("driver"), Mapping) else None
    driver_id = _pick(nested, "driver_id", "id") or _pick(data, "driver_id", "rider_id")
    if not driver_id:
        return None
    return DriverInfo(
        driver_id=str(driver_id),
        name=str(_pick(nested, "name") or _pick(data, "driver_name", default="Unknown Driver")),
        vehicle=str(_pick(nested, "vehicle") or _pick(data, "driver_vehicle", default="")),
        phone=str(_pick(nested, "phone") or _pick(data, "driver_phone", default="")),
        assigned_at=_timestamp(_pick(nested, "assigned_at")) or timeline.assigned_at,
    )


def _timeline(data: Mapping[str, Any]) -> OrderTimeline:
    raw = data.get("timeline") if isinstance(data.get("timeline"), Mapping) else {}
    values: Dict[str, Any] = {name: _timestamp(_pick(raw, name)) for name in _TIMELINE_FIELDS}
    values["created_at"] = values["created_at"] or _timestamp(_pick(data, "created_at"))
    # Delivery orders report delivered_at only
    values["completed_at"] = values["completed_at"] or values["delivered_at"]
    values["cancelled_by"] = _pick(raw, "cancelled_by")
    values["cancellation_reason"] = _pick(raw, "cancellation_reason")
    return OrderTimeline(**values)


def _reconcile(order_id: str, status: OrderStatus, timeline: OrderTimeline,
               driver: Optional[DriverInfo], updated_at: datetime):
    """Enforce driver/timeline invariants, logging every repair."""
    if driver is not None and status in PRE_ASSIGNMENT_STATUSES:
        logger.warning(f"Order {order_id}: driver {driver.driver_id} on {status.value} order dropped",
                       extra={"order_id": order_id})
        driver = None

    if status in TERMINAL_STATUSES:
        if status == OrderStatus.CANCELLED and timeline.cancelled_at is None:
            logger.warning(f"Order {order_id}: cancelled without cancelled_at, using updated_at",
                           extra={"order_id": order_id})
            timeline = timeline.model_copy(update={"cancelled_at": updated_at})
        elif status != OrderStatus.CANCELLED and timeline.completed_at is None:
            logger.warning(f"Order {order_id}: {status.value} without completed_at, using updated_at",
                           extra={"order_id": order_id})
            timeline = timeline.model_copy(update={"completed_at": updated_at})
    elif timeline.completed_at is not None or timeline.cancelled_at is not None:
        logger.warning(f"Order {order_id}: terminal timestamp on {status.value} order removed",
                       extra={"order_id": order_id})
        timeline = timeline.model_copy(update={"completed_at": None, "delivered_at": None, "cancelled_at": None})

    return timeline, driver


def map_upstream_order(data: Mapping[str, Any]) -> Order:
    """
    Map one upstream record to an `Order`.

    Never raises for a mapping input: missing fields take neutral defaults
    (rating 5, total 0, "Unknown Address", ...) and an unrecognised status is
    shown as Pending while `raw_status` keeps the original value.
    """
    order_id = str(_pick(data, "order_id", "id", "order_number", default="unknown"))
    raw_status = _pick(data, "status", default="")
    status = map_status(raw_status)
    if status is None:
        logger.warning(f"Order {order_id}: unknown status {raw_status!r}, treating as Pending",
                       extra={"order_id": order_id})
        status = OrderStatus.PENDING

    now = utcnow()
    created_at = _timestamp(_pick(data, "created_at")) or now
    updated_at = _timestamp(_pick(data, "updated_at")) or created_at

    timeline = _timeline(data)
    driver = _driver(data, timeline)
    timeline, driver = _reconcile(order_id, status, timeline, driver, updated_at)

    customer_data = data.get("customer") if isinstance(data.get("customer"), Mapping) else None
    customer = Customer(
        customer_id=str(_pick(customer_data, "customer_id", "id") or _pick(data, "customer_id", default="unknown")),
        name=str(_pick(customer_data, "name") or _pick(data, "customer_name", default="Unknown Customer")),
        phone=str(_pick(customer_data, "phone") or _pick(data, "customer_phone", default="")),
        email=str(_pick(customer_data, "email") or _pick(data, "customer_email", default="")),
        rating=_number(_pick(customer_data, "rating") or _pick(data, "customer_rating"), 5.0),
    )

    route_data = data.get("route") if isinstance(data.get("route"), Mapping) else {}
    pickup = route_data.get("pickup") or data.get("pickup_location") or data.get("pickupLocation")
    dropoff = route_data.get("dropoff") or data.get("dropoff_location") or data.get("dropoffLocation")
    actual_distance = _pick(route_data, "actual_distance")
    actual_duration = _pick(route_data, "actual_duration")
    route = Route(
        pickup=_waypoint(pickup, fallback_name=customer.name),
        dropoff=_waypoint(dropoff),
        distance=_number(_pick(route_data, "distance")),
        estimated_duration=_number(_pick(route_data, "estimated_duration")),
        actual_distance=_number(actual_distance) if actual_distance is not None else None,
        actual_duration=_number(actual_duration) if actual_duration is not None else None,
    )

    payment = data.get("pricing") or data.get("payment")
    if not isinstance(payment, Mapping):
        payment = {}
    pricing = Pricing(
        base_fare=_number(_pick(payment, "base_fare")),
        distance_fare=_number(_pick(payment, "distance_fare")),
        time_fare=_number(_pick(payment, "time_fare")),
        surge=_number(_pick(payment, "surge")),
        discount=_number(_pick(payment, "discount")),
        total=_number(_pick(payment, "total") or _pick(data, "total")),
        payment_method=str(_pick(payment, "payment_method", "method", default="Cash")),
        is_paid=bool(_pick(payment, "is_paid", default=False)) or _pick(payment, "status") == "PAID",
    )

    flag_data = data.get("flags") if isinstance(data.get("flags"), Mapping) else {}
    flags = OrderFlags(**{
        name: bool(_pick(flag_data, name, default=False))
        for name in OrderFlags.model_fields
    })

    return Order(
        order_id=order_id,
        transaction_id=str(_pick(data, "transaction_id", default="")),
        status=status,
        raw_status=str(raw_status),
        service_type=_enum(ServiceType, _pick(data, "service_type"), ServiceType.DELIVERY),
        priority=_enum(Priority, _pick(data, "priority"), Priority.NORMAL),
        customer=customer,
        driver_assignment=Assigned(driver=driver) if driver else Unassigned(),
        route=route,
        pricing=pricing,
        timeline=timeline,
        flags=flags,
        notes=str(_pick(data, "notes", default="")),
        created_at=created_at,
        updated_at=updated_at,
    )


def map_upstream_orders(records: Any) -> List[Order]:
    """Map a list of records, skipping (and logging) entries that are not objects."""
    orders: List[Order] = []
    for record in records or []:
        if not isinstance(record, Mapping):
            logger.warning(f"Skipping non-object order record: {record!r}")
            continue
        orders.append(map_upstream_order(record))
    return orders
