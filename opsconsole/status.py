"""
Order lifecycle rules.

The server is authoritative for every transition; these tables exist so the
client can decide whether to keep polling, which orders are assignable, and how
to present a status. Nothing here computes a next status.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from opsconsole.models import Order, OrderStatus, utcnow

S = OrderStatus

ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    S.SEARCHING, S.ASSIGNED, S.ACCEPTED, S.EN_ROUTE, S.ARRIVED, S.ON_TRIP,
})
TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({S.COMPLETED, S.DELIVERED, S.CANCELLED})
ASSIGNABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({S.SEARCHING, S.PENDING, S.SCHEDULED})
PRE_ASSIGNMENT_STATUSES: FrozenSet[OrderStatus] = ASSIGNABLE_STATUSES

# status -> {event: next status}
TRANSITIONS: Dict[OrderStatus, Dict[str, Tuple[OrderStatus, ...]]] = {
    S.PENDING: {"search": (S.SEARCHING,), "cancel": (S.CANCELLED,)},
    S.SCHEDULED: {"search": (S.SEARCHING,), "cancel": (S.CANCELLED,)},
    S.SEARCHING: {"match": (S.ASSIGNED,), "cancel": (S.CANCELLED,)},
    S.ASSIGNED: {"ack": (S.ACCEPTED,), "cancel": (S.CANCELLED,)},
    S.ACCEPTED: {"depart": (S.EN_ROUTE,), "cancel": (S.CANCELLED,)},
    S.EN_ROUTE: {"arrive": (S.ARRIVED,), "cancel": (S.CANCELLED,)},
    S.ARRIVED: {"start": (S.ON_TRIP, S.IN_TRANSIT), "cancel": (S.CANCELLED,)},
    S.ON_TRIP: {"finish": (S.COMPLETED, S.DELIVERED), "cancel": (S.CANCELLED,)},
    S.IN_TRANSIT: {"finish": (S.COMPLETED, S.DELIVERED), "cancel": (S.CANCELLED,)},
    S.COMPLETED: {},
    S.DELIVERED: {},
    S.CANCELLED: {},
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_assignable(status: OrderStatus) -> bool:
    return status in ASSIGNABLE_STATUSES


def should_poll(status: Optional[OrderStatus]) -> bool:
    """True while the order is being dispatched or is on the road."""
    return status in ACTIVE_STATUSES


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Whether the server moving `current` -> `new` follows the canonical lifecycle."""
    return any(new in targets for targets in TRANSITIONS[current].values())


@dataclass(frozen=True)
class StatusBadge:
    label: str
    variant: str  # neutral | info | warning | success | danger


_BADGES: Dict[OrderStatus, StatusBadge] = {
    S.PENDING: StatusBadge("Pending", "neutral"),
    S.SCHEDULED: StatusBadge("Scheduled", "neutral"),
    S.SEARCHING: StatusBadge("Searching", "warning"),
    S.ASSIGNED: StatusBadge("Assigned", "info"),
    S.ACCEPTED: StatusBadge("Accepted", "info"),
    S.EN_ROUTE: StatusBadge("En Route", "info"),
    S.ARRIVED: StatusBadge("Arrived", "info"),
    S.ON_TRIP: StatusBadge("On Trip", "info"),
    S.IN_TRANSIT: StatusBadge("In Transit", "info"),
    S.COMPLETED: StatusBadge("Completed", "success"),
    S.DELIVERED: StatusBadge("Delivered", "success"),
    S.CANCELLED: StatusBadge("Cancelled", "danger"),
}

_missing = set(OrderStatus) - set(_BADGES)
if _missing:
    raise RuntimeError(f"status badges missing for: {sorted(s.value for s in _missing)}")


def status_badge(status: OrderStatus) -> StatusBadge:
    return _BADGES[status]


class StatusChangeTracker:
    """
    Remembers the last status seen by one consumer (a detail view, a subscription).
    Each consumer owns its tracker, so two views of the same order never share history.
    """
    def __init__(self, initial: Optional[OrderStatus] = None):
        self.previous: Optional[OrderStatus] = initial

    def observe(self, status: OrderStatus) -> Optional[Tuple[OrderStatus, OrderStatus]]:
        """
        Record `status`. Returns (new, old) when it differs from a previously seen
        status, None on the first observation or when unchanged.
        """
        old, self.previous = self.previous, status
        if old is not None and old != status:
            return status, old
        return None


@dataclass(frozen=True)
class OrderStats:
    total_duration_s: float
    assignment_time_s: Optional[float]
    acceptance_time_s: Optional[float]
    pickup_time_s: Optional[float]
    is_delayed: bool
    efficiency: Optional[float]


def _seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start).total_seconds()


def compute_order_stats(order: Order, now: Optional[datetime] = None) -> OrderStats:
    now = now or utcnow()
    timeline = order.timeline
    booked = timeline.booked_at or timeline.created_at or order.created_at
    end = timeline.closed_at or now
    total = (end - booked).total_seconds()

    estimated = order.route.estimated_duration
    actual = order.route.actual_duration
    return OrderStats(
        total_duration_s=total,
        assignment_time_s=_seconds(booked, timeline.assigned_at),
        acceptance_time_s=_seconds(timeline.assigned_at, timeline.accepted_at),
        pickup_time_s=_seconds(timeline.arrived_at, timeline.picked_up_at),
        # More than 50% over the estimate
        is_delayed=estimated > 0 and total > estimated * 1.5,
        efficiency=(estimated / actual) * 100 if estimated and actual else None,
    )
