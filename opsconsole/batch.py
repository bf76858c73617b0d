from typing import Dict, Iterable, List, Optional

from opsconsole.actions import OrderActions
from opsconsole.assignment import AssignmentCoordinator
from opsconsole.models import FailureReason, MutationOutcome, Order
from opsconsole.selection import BatchSelection
from opsconsole.status import is_assignable
from opsconsole.utils.logging import get_logger

logger = get_logger("BatchOperations")


class BatchOperations:
    """
    Bulk cancel and bulk assign over whatever is selected when the action runs.
    The selection is cleared only on success; after a partial success the
    failed orders stay selected so the operator can retry them.
    """
    def __init__(self,
                 selection: BatchSelection,
                 actions: OrderActions,
                 assignment: AssignmentCoordinator):
        self.selection = selection
        self.actions = actions
        self.assignment = assignment
        # Last status seen for every order shown in any view, so hidden selections stay checkable
        self._orders: Dict[str, Order] = {}

    def set_view(self, orders: Iterable[Order]) -> None:
        orders = list(orders)
        self._orders.update((order.order_id, order) for order in orders)
        self.selection.set_visible(order.order_id for order in orders)

    def _unassignable(self, order_ids: List[str]) -> Dict[str, str]:
        """Selected ids that must not go into a bulk assignment, with the reason for each."""
        visible = set(self.selection.visible_ids)
        blocked: Dict[str, str] = {}
        for order_id in order_ids:
            order = self._orders.get(order_id)
            if order is None:
                blocked[order_id] = "unknown status"
            elif order_id not in visible:
                # The last status we saw may be out of date
                blocked[order_id] = "not in the current view"
            elif not is_assignable(order.status):
                blocked[order_id] = order.status.value
        return blocked

    def _settle(self, outcome: MutationOutcome) -> MutationOutcome:
        if not outcome.ok:
            return outcome
        if outcome.failed_orders:
            succeeded = [o for o in outcome.order_ids if o not in outcome.failed_orders]
            self.selection.deselect(succeeded)
            logger.warning(f"{len(outcome.failed_orders)} orders failed and remain selected")
        else:
            self.selection.deselect_all()
        return outcome

    async def bulk_cancel(self, reason: str) -> MutationOutcome:
        order_ids = self.selection.selected_ids
        return self._settle(await self.actions.bulk_cancel(order_ids, reason))

    async def bulk_assign(self, driver_id: Optional[str] = None) -> MutationOutcome:
        order_ids = self.selection.selected_ids
        blocked = self._unassignable(order_ids)
        if blocked:
            statuses = sorted(set(blocked.values()))
            return MutationOutcome.failure(
                FailureReason.NOT_ASSIGNABLE,
                f"{len(blocked)} selected orders cannot be assigned ({', '.join(statuses)}).",
                list(blocked),
            )
        return self._settle(await self.assignment.commit(order_ids, driver_id))
