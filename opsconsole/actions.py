from typing import Awaitable, Callable, List, Optional, Sequence

from opsconsole import collaborators
from opsconsole.cache import Mutation, QueryCache, invalidate_after
from opsconsole.collaborators import AllowAll, LoggingNotifier, Notifier, PermissionChecker
from opsconsole.errors import AuthorizationError, NotFoundError, RequestRejectedError, TransportError
from opsconsole.models import FailureReason, MutationOutcome, Priority, TransportResult
from opsconsole.transport.base import OrderTransport
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("OrderActions")

PERMISSIONS = {
    Mutation.CANCEL: collaborators.CANCEL,
    Mutation.BULK_CANCEL: collaborators.CANCEL,
    Mutation.COMPLETE: collaborators.COMPLETE,
    Mutation.PRIORITIZE: collaborators.PRIORITIZE,
}


class OrderActions:
    """
    Operator writes other than assignment: cancel, complete, prioritize.

    Each call checks permission and validates locally before touching the
    network, never raises, and invalidates cached reads only once the server
    has acknowledged the change.
    """
    def __init__(self,
                 transport: OrderTransport,
                 cache: QueryCache,
                 permissions: Optional[PermissionChecker] = None,
                 notifier: Optional[Notifier] = None):
        self.transport = transport
        self.cache = cache
        self.permissions = permissions or AllowAll()
        self.notifier = notifier or LoggingNotifier()
        self._mutations = MetricsManager().counter(
            "opsconsole_mutations_total", "Order mutations by kind and result", ["mutation", "result"]
        )

    def allowed(self, mutation: Mutation) -> bool:
        return self.permissions.has_permission(PERMISSIONS[mutation])

    def _done(self, mutation: Mutation, outcome: MutationOutcome) -> MutationOutcome:
        result = "ok" if outcome.ok else outcome.reason.value
        self._mutations.labels(mutation=mutation.value, result=result).inc()
        return outcome

    async def _run(self,
                   mutation: Mutation,
                   order_ids: List[str],
                   call: Callable[[], Awaitable[TransportResult]],
                   success_message: str) -> MutationOutcome:
        if not order_ids:
            return self._done(mutation, MutationOutcome.failure(FailureReason.NO_ORDERS, "No orders selected."))
        if not self.allowed(mutation):
            message = f"You do not have permission to {mutation.value.replace('_', ' ')} orders."
            return self._done(mutation, MutationOutcome.failure(FailureReason.PERMISSION_DENIED, message, order_ids))

        try:
            result = await call()
        except AuthorizationError as e:
            self.notifier.notify("error", e.message)
            return self._done(mutation, MutationOutcome.failure(FailureReason.UNAUTHORIZED, e.message, order_ids))
        except NotFoundError as e:
            self.notifier.notify("error", e.message)
            return self._done(mutation, MutationOutcome.failure(FailureReason.NOT_FOUND, e.message, order_ids))
        except RequestRejectedError as e:
            logger.warning(f"{mutation.value} of {order_ids} rejected ({e.code}): {e.message}")
            self.notifier.notify("error", e.message)
            return self._done(mutation, MutationOutcome.failure(FailureReason.REJECTED, e.message, order_ids))
        except TransportError as e:
            logger.error(f"{mutation.value} of {order_ids} failed: {e!r}")
            message = f"Failed to {mutation.value.replace('_', ' ')}: {e.message}"
            self.notifier.notify("error", message)
            return self._done(mutation, MutationOutcome.failure(FailureReason.TRANSPORT_ERROR, message, order_ids))

        if not result.success:
            message = result.message or f"The server rejected the {mutation.value.replace('_', ' ')} request."
            self.notifier.notify("error", message)
            return self._done(mutation, MutationOutcome.failure(FailureReason.REJECTED, message, order_ids))

        invalidate_after(self.cache, mutation, order_ids)
        failed = tuple(o for o in result.failed_orders if o in order_ids)
        message = success_message
        if failed:
            message += f" ({len(failed)} failed)"
            self.notifier.notify("warning", message)
        else:
            self.notifier.notify("success", message)
        logger.info(f"{mutation.value} acknowledged for {order_ids}")
        return self._done(mutation, MutationOutcome(
            ok=True, message=message, order_ids=tuple(order_ids), failed_orders=failed
        ))

    @staticmethod
    def _reason_missing(reason: Optional[str], order_ids: Sequence[str]) -> Optional[MutationOutcome]:
        if not reason or not reason.strip():
            return MutationOutcome.failure(
                FailureReason.MISSING_REASON, "A cancellation reason is required.", order_ids
            )
        return None

    async def cancel(self, order_id: str, reason: str) -> MutationOutcome:
        missing = self._reason_missing(reason, [order_id])
        if missing:
            return self._done(Mutation.CANCEL, missing)
        return await self._run(
            Mutation.CANCEL,
            [order_id],
            lambda: self.transport.cancel(order_id, reason.strip()),
            "Order cancelled successfully",
        )

    async def bulk_cancel(self, order_ids: Sequence[str], reason: str) -> MutationOutcome:
        order_ids = list(dict.fromkeys(order_ids))
        missing = self._reason_missing(reason, order_ids)
        if missing and order_ids:
            return self._done(Mutation.BULK_CANCEL, missing)
        return await self._run(
            Mutation.BULK_CANCEL,
            order_ids,
            lambda: self.transport.bulk_cancel(order_ids, reason.strip()),
            f"{len(order_ids)} orders cancelled",
        )

    async def complete(self, order_id: str, notes: Optional[str] = None) -> MutationOutcome:
        return await self._run(
            Mutation.COMPLETE,
            [order_id],
            lambda: self.transport.complete_order(order_id, notes),
            "Order marked as completed",
        )

    async def prioritize(self, order_id: str, priority: Priority = Priority.HIGH,
                         reason: Optional[str] = None) -> MutationOutcome:
        return await self._run(
            Mutation.PRIORITIZE,
            [order_id],
            lambda: self.transport.prioritize_order(order_id, priority, reason),
            f"Order priority set to {priority.value}",
        )
