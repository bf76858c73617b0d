from typing import Iterable, List, Optional, Sequence, Union

from opsconsole import collaborators
from opsconsole.cache import Mutation, OrderKeys, QueryCache, invalidate_after
from opsconsole.collaborators import AllowAll, LoggingNotifier, Notifier, PermissionChecker
from opsconsole.errors import (
    AuthorizationError, InvalidRequestError, NotFoundError, RequestRejectedError, TransportError,
)
from opsconsole.models import (
    AssignmentRequest, DriverStatus, FailureReason, GeoPoint, MutationOutcome, NearbyDriver,
)
from opsconsole.settings import settings
from opsconsole.transport.base import OrderTransport
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("Assignment")

SORT_KEYS = {
    "distance": lambda d: d.distance,
    "eta": lambda d: d.estimated_arrival,
    "rating": lambda d: -d.rating,
    "trust_score": lambda d: -d.trust_score,
}


def rank_candidates(drivers: Iterable[NearbyDriver], sort_by: str = "distance") -> List[NearbyDriver]:
    """Order candidates for display. Rating and trust score sort best first."""
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key {sort_by!r}, expected one of {sorted(SORT_KEYS)}")
    return sorted(drivers, key=SORT_KEYS[sort_by])


def filter_candidates(drivers: Iterable[NearbyDriver],
                      max_distance: Optional[float] = None,
                      max_eta: Optional[float] = None,
                      min_rating: Optional[float] = None,
                      vehicle_type: Optional[str] = None,
                      status: Optional[Sequence[DriverStatus]] = None) -> List[NearbyDriver]:
    result = []
    for driver in drivers:
        if max_distance is not None and driver.distance > max_distance:
            continue
        if max_eta is not None and driver.estimated_arrival > max_eta:
            continue
        if min_rating is not None and driver.rating < min_rating:
            continue
        if vehicle_type and driver.vehicle_type.lower() != vehicle_type.lower():
            continue
        if status and driver.status not in status:
            continue
        result.append(driver)
    return result


class AssignmentCoordinator:
    """
    State behind one assignment surface: candidate lookup, the operator's pick,
    and a single commit at a time.

    `commit` never raises. Its MutationOutcome carries a FailureReason so the
    caller can tell "nothing selected" from "already submitting" from a server
    refusal. Selection and notes survive a failed commit.
    """
    def __init__(self,
                 transport: OrderTransport,
                 cache: QueryCache,
                 permissions: Optional[PermissionChecker] = None,
                 notifier: Optional[Notifier] = None,
                 nearby_stale_s: Optional[float] = None,
                 radius: Optional[int] = None,
                 limit: Optional[int] = None):
        self.transport = transport
        self.cache = cache
        self.permissions = permissions or AllowAll()
        self.notifier = notifier or LoggingNotifier()
        self.nearby_stale_s = nearby_stale_s if nearby_stale_s is not None else settings.NEARBY_STALE_S
        self.radius = radius if radius is not None else settings.NEARBY_RADIUS_M
        self.limit = limit if limit is not None else settings.NEARBY_LIMIT

        self.selected: Optional[NearbyDriver] = None
        self.notes: str = ""
        self.last_outcome: Optional[MutationOutcome] = None
        self._committing = False

        self._commits = MetricsManager().counter(
            "opsconsole_assignment_commits_total", "Assignment commits by result", ["result"]
        )

    @property
    def is_committing(self) -> bool:
        return self._committing

    @property
    def can_assign(self) -> bool:
        return self.permissions.has_permission(collaborators.ASSIGN)

    async def lookup_nearby(self,
                            order_id: str,
                            pickup: Optional[GeoPoint],
                            radius: Optional[int] = None,
                            limit: Optional[int] = None) -> List[NearbyDriver]:
        """
        Candidate drivers around the pickup, nearest first. An empty list is a
        valid answer. Results are reused only for a few seconds.
        """
        if pickup is None:
            raise InvalidRequestError(f"Order {order_id} has no pickup location")
        radius = radius or self.radius
        limit = limit or self.limit

        key = OrderKeys.for_nearby(order_id, pickup.lat, pickup.lng) + (radius, limit)
        entry = await self.cache.fetch(
            key,
            lambda: self.transport.nearby_drivers(order_id, pickup, radius, limit),
            stale_time=self.nearby_stale_s,
        )
        if not entry.value:
            logger.info(f"No drivers within {radius}m of order {order_id}")
        return entry.value

    def select_driver(self, candidate: NearbyDriver) -> None:
        self.selected = candidate

    def clear_selection(self) -> None:
        self.selected = None

    def _finish(self, outcome: MutationOutcome) -> MutationOutcome:
        self.last_outcome = outcome
        result = "ok" if outcome.ok else outcome.reason.value
        self._commits.labels(result=result).inc()
        return outcome

    async def commit(self,
                     order_ids: Union[str, Sequence[str]],
                     driver_id: Optional[str] = None,
                     notes: Optional[str] = None) -> MutationOutcome:
        if isinstance(order_ids, str):
            order_ids = [order_ids]
        order_ids = list(dict.fromkeys(order_ids))

        # Checked and set before the first await
        if self._committing:
            return self._finish(MutationOutcome.failure(
                FailureReason.COMMIT_IN_PROGRESS, "An assignment is already being submitted.", order_ids
            ))
        if not order_ids:
            return self._finish(MutationOutcome.failure(FailureReason.NO_ORDERS, "No orders to assign."))

        driver_id = driver_id or (self.selected.assignee_id if self.selected else None)
        if not driver_id:
            return self._finish(MutationOutcome.failure(
                FailureReason.NO_DRIVER_SELECTED, "Select a driver first.", order_ids
            ))
        if not self.can_assign:
            return self._finish(MutationOutcome.failure(
                FailureReason.PERMISSION_DENIED, "You do not have permission to assign orders.", order_ids
            ))

        self._committing = True
        try:
            return self._finish(await self._submit(order_ids, driver_id, notes if notes is not None else self.notes))
        finally:
            self._committing = False

    async def _submit(self, order_ids: List[str], driver_id: str, notes: str) -> MutationOutcome:
        request = AssignmentRequest(order_ids=order_ids, driver_id=driver_id, notes=notes or None)
        bulk = request.is_bulk
        try:
            if bulk:
                result = await self.transport.bulk_assign(request)
            else:
                result = await self.transport.assign(request)
        except AuthorizationError as e:
            logger.warning(f"Assignment of {order_ids} refused: {e.message}")
            self.notifier.notify("error", e.message)
            return MutationOutcome.failure(FailureReason.UNAUTHORIZED, e.message, order_ids)
        except NotFoundError as e:
            logger.warning(f"Assignment of {order_ids} failed: {e.message}")
            self.notifier.notify("error", e.message)
            return MutationOutcome.failure(FailureReason.NOT_FOUND, e.message, order_ids)
        except RequestRejectedError as e:
            logger.warning(f"Assignment of {order_ids} to {driver_id} rejected ({e.code}): {e.message}")
            self.notifier.notify("error", e.message)
            return MutationOutcome.failure(FailureReason.REJECTED, e.message, order_ids)
        except TransportError as e:
            logger.error(f"Assignment of {order_ids} to {driver_id} failed: {e!r}")
            message = f"Failed to assign driver: {e.message}"
            self.notifier.notify("error", message)
            return MutationOutcome.failure(FailureReason.TRANSPORT_ERROR, message, order_ids)

        if not result.success:
            message = result.message or "The server rejected the assignment."
            self.notifier.notify("error", message)
            return MutationOutcome.failure(FailureReason.REJECTED, message, order_ids)

        invalidate_after(self.cache, Mutation.BULK_ASSIGN if bulk else Mutation.ASSIGN, order_ids)
        self.selected = None
        self.notes = ""

        failed = tuple(o for o in result.failed_orders if o in order_ids)
        if bulk:
            message = f"{len(order_ids) - len(failed)} orders assigned successfully"
        else:
            message = "Driver assigned successfully"
        if failed:
            message += f"; {len(failed)} failed"
            self.notifier.notify("warning", message)
        else:
            self.notifier.notify("success", message)
        logger.info(f"Assigned {order_ids} to driver {driver_id}")
        return MutationOutcome(ok=True, message=message, order_ids=tuple(order_ids), failed_orders=failed)
