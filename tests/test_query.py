import asyncio
import unittest

import pytest

from opsconsole.assignment import AssignmentCoordinator
from opsconsole.cache import OrderKeys, QueryCache
from opsconsole.collaborators import RecordingNotifier
from opsconsole.errors import AuthorizationError, NotFoundError, TransientTransportError
from opsconsole.models import OrderFilters, OrderStatus
from opsconsole.query import OrderQueryService, OrderTab, filter_by_tab, tab_counts
from tests.factories import make_order, make_page, mock_transport

S = OrderStatus
POLL = 0.01


def test_tabs_are_pure_splits():
    orders = [
        make_order("a", S.SEARCHING),
        make_order("b", S.ON_TRIP),
        make_order("c", S.IN_TRANSIT),
        make_order("d", S.COMPLETED),
        make_order("e", S.DELIVERED),
        make_order("f", S.CANCELLED),
        make_order("g", S.PENDING),
    ]
    assert [o.order_id for o in filter_by_tab(orders, OrderTab.ACTIVE)] == ["a", "b"]
    assert [o.order_id for o in filter_by_tab(orders, OrderTab.COMPLETED)] == ["d", "e"]
    assert [o.order_id for o in filter_by_tab(orders, OrderTab.CANCELLED)] == ["f"]
    assert len(filter_by_tab(orders, OrderTab.ALL)) == 7
    assert tab_counts(orders) == {
        OrderTab.ALL: 7, OrderTab.ACTIVE: 2, OrderTab.COMPLETED: 2, OrderTab.CANCELLED: 1,
    }


class TestOrderReads(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.transport = mock_transport()
        self.cache = QueryCache()
        self.service = OrderQueryService(self.transport, self.cache, list_stale_s=30, detail_stale_s=5)
        self.filters = OrderFilters()

    async def test_list_is_cached(self):
        self.transport.list_orders.return_value = make_page(make_order("a"))
        await self.service.list_orders(self.filters)
        await self.service.list_orders(self.filters)
        self.assertEqual(self.transport.list_orders.await_count, 1)

    async def test_synthetic_page_never_stays_fresh(self):
        self.transport.list_orders.return_value = make_page(
            make_order("synthetic-order-0", synthetic=True), source="synthetic", fallback_reason="NETWORK_ERROR"
        )
        page = await self.service.list_orders(self.filters)
        self.assertTrue(page.is_synthetic)
        await self.service.list_orders(self.filters)
        self.assertEqual(self.transport.list_orders.await_count, 2)

    async def test_cached_live_page_beats_synthetic_fallback(self):
        live = make_page(make_order("a"))
        synthetic = make_page(make_order("synthetic-order-0", synthetic=True), source="synthetic",
                              fallback_reason="SERVER_ERROR")
        self.transport.list_orders.side_effect = [live, synthetic]

        await self.service.list_orders(self.filters)
        page = await self.service.list_orders(self.filters, force=True)

        self.assertEqual(page, live)
        key = OrderKeys.for_list(self.filters)
        self.assertEqual(self.cache.get(key), live)
        self.assertTrue(self.cache.peek(key).stale)

    async def test_transient_error_serves_cached_order(self):
        order = make_order("o-1", S.ASSIGNED)
        self.transport.get_order.side_effect = [order, TransientTransportError(0, "NETWORK_ERROR", "down")]
        await self.service.get_order("o-1")
        self.assertEqual(await self.service.get_order("o-1", force=True), order)

    async def test_transient_error_without_cache_propagates(self):
        self.transport.get_order.side_effect = TransientTransportError(0, "NETWORK_ERROR", "down")
        with self.assertRaises(TransientTransportError):
            await self.service.get_order("o-1")

    async def test_authorization_error_propagates(self):
        self.transport.list_orders.side_effect = AuthorizationError(401, "UNAUTHORIZED", "expired")
        with self.assertRaises(AuthorizationError):
            await self.service.list_orders(self.filters)

    async def test_tab_view_lists_once(self):
        self.transport.list_orders.return_value = make_page(make_order("a", S.SEARCHING), make_order("b", S.CANCELLED))
        view = await self.service.tab_view(self.filters, OrderTab.CANCELLED)
        self.assertEqual([o.order_id for o in view["orders"]], ["b"])
        self.assertEqual(view["counts"][OrderTab.ALL], 2)
        self.assertEqual(self.transport.list_orders.await_count, 1)

    async def test_single_assign_refreshes_list_and_detail(self):
        self.transport.list_orders.return_value = make_page(make_order("x"))
        self.transport.get_order.return_value = make_order("x")
        await self.service.list_orders(self.filters)
        await self.service.get_order("x")

        coordinator = AssignmentCoordinator(self.transport, self.cache, notifier=RecordingNotifier())
        outcome = await coordinator.commit("x", "R1")
        self.assertTrue(outcome.ok)

        await self.service.list_orders(self.filters)
        await self.service.get_order("x")
        self.assertEqual(self.transport.list_orders.await_count, 2)
        self.assertEqual(self.transport.get_order.await_count, 2)

    async def test_bulk_assign_refreshes_list_only(self):
        self.transport.list_orders.return_value = make_page(make_order("x"), make_order("y"))
        self.transport.get_order.return_value = make_order("x")
        await self.service.list_orders(self.filters)
        await self.service.get_order("x")

        coordinator = AssignmentCoordinator(self.transport, self.cache, notifier=RecordingNotifier())
        outcome = await coordinator.commit(["x", "y"], "R1")
        self.assertTrue(outcome.ok)

        await self.service.list_orders(self.filters)
        await self.service.get_order("x")
        self.assertEqual(self.transport.list_orders.await_count, 2)
        self.assertEqual(self.transport.get_order.await_count, 1)


class TestDetailPolling(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.transport = mock_transport()
        self.cache = QueryCache()
        self.service = OrderQueryService(self.transport, self.cache, poll_interval_s=POLL)

    def serve(self, *orders):
        """get_order returns each order in turn, then keeps returning the last one."""
        queue = list(orders)

        async def get_order(order_id):
            item = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(item, Exception):
                raise item
            return item

        self.transport.get_order.side_effect = get_order

    async def asyncTearDown(self):
        await self.service.close()

    async def test_polling_stops_when_order_completes(self):
        self.serve(make_order("o-1", S.SEARCHING), make_order("o-1", S.COMPLETED))
        changes = []
        sub = self.service.watch_order("o-1", on_status_change=lambda new, old: changes.append((new, old)))

        await asyncio.sleep(POLL * 10)
        fetches = self.transport.get_order.await_count
        self.assertEqual(fetches, 2)
        self.assertFalse(sub.is_polling)
        self.assertEqual(sub.order.status, S.COMPLETED)
        self.assertIsNotNone(sub.order.timeline.completed_at)
        self.assertEqual(changes, [(S.COMPLETED, S.SEARCHING)])

        await asyncio.sleep(POLL * 5)
        self.assertEqual(self.transport.get_order.await_count, fetches)

    async def test_terminal_order_is_fetched_once(self):
        self.serve(make_order("o-1", S.CANCELLED))
        sub = self.service.watch_order("o-1")
        await sub.wait_until_idle(timeout=1)
        await asyncio.sleep(POLL * 5)
        self.assertEqual(self.transport.get_order.await_count, 1)
        self.assertFalse(sub.is_polling)

    async def test_active_order_keeps_polling(self):
        self.serve(make_order("o-1", S.EN_ROUTE))
        sub = self.service.watch_order("o-1")
        await asyncio.sleep(POLL * 10)
        self.assertTrue(sub.is_polling)
        self.assertGreater(self.transport.get_order.await_count, 2)

    async def test_failed_tick_keeps_value_and_subscription(self):
        errors = []
        self.serve(
            make_order("o-1", S.ACCEPTED),
            TransientTransportError(503, "SERVER_ERROR", "down"),
            make_order("o-1", S.EN_ROUTE),
        )
        sub = self.service.watch_order("o-1", on_error=errors.append)
        await asyncio.sleep(POLL * 10)

        self.assertEqual(len(errors), 1)
        self.assertEqual(sub.order.status, S.EN_ROUTE)
        self.assertTrue(sub.is_polling)
        self.assertIsNone(sub.error)

    async def test_unexpected_tick_error_keeps_polling(self):
        errors = []
        self.serve(
            make_order("o-1", S.EN_ROUTE),
            OverflowError("timestamp out of range"),
            make_order("o-1", S.ON_TRIP),
        )
        sub = self.service.watch_order("o-1", on_error=errors.append)
        await asyncio.sleep(POLL * 10)

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], OverflowError)
        self.assertEqual(sub.order.status, S.ON_TRIP)
        self.assertTrue(sub.is_polling)
        self.assertGreater(self.transport.get_order.await_count, 3)

        await sub.close()
        self.assertFalse(sub.is_polling)

    async def test_failing_update_callback_does_not_end_subscription(self):
        self.serve(make_order("o-1", S.ACCEPTED))

        def on_update(order):
            raise RuntimeError("view went away")

        sub = self.service.watch_order("o-1", on_update=on_update)
        await asyncio.sleep(POLL * 5)

        self.assertTrue(sub.is_polling)
        self.assertGreater(self.transport.get_order.await_count, 2)

    async def test_synthetic_response_does_not_replace_live_order(self):
        updates = []
        self.serve(make_order("o-1", S.ACCEPTED), make_order("o-1", S.PENDING, synthetic=True))
        sub = self.service.watch_order("o-1", on_update=updates.append)
        await asyncio.sleep(POLL * 10)

        self.assertEqual(sub.order.status, S.ACCEPTED)
        self.assertFalse(sub.order.synthetic)
        self.assertTrue(all(not o.synthetic for o in updates))
        self.assertTrue(sub.is_polling)

    async def test_authorization_error_stops_subscription(self):
        errors = []
        self.serve(AuthorizationError(401, "UNAUTHORIZED", "expired"))
        sub = self.service.watch_order("o-1", on_error=errors.append)
        await asyncio.sleep(POLL * 5)

        self.assertTrue(sub.stopped)
        self.assertFalse(sub.is_polling)
        self.assertEqual(self.transport.get_order.await_count, 1)
        self.assertIsInstance(errors[0], AuthorizationError)

    async def test_missing_order_stops_subscription(self):
        self.serve(NotFoundError(404, "NOT_FOUND", "gone"))
        sub = self.service.watch_order("o-1")
        await asyncio.sleep(POLL * 5)
        self.assertTrue(sub.stopped)

    async def test_invalidation_resumes_polling(self):
        self.serve(make_order("o-1", S.PENDING), make_order("o-1", S.SEARCHING))
        sub = self.service.watch_order("o-1")
        await asyncio.sleep(POLL * 5)
        self.assertFalse(sub.is_polling)
        self.assertEqual(self.transport.get_order.await_count, 1)

        self.cache.invalidate(OrderKeys.for_detail("o-1"))
        await asyncio.sleep(POLL * 5)
        self.assertTrue(sub.is_polling)
        self.assertEqual(sub.order.status, S.SEARCHING)

    async def test_manual_refresh_refetches_paused_subscription(self):
        self.serve(make_order("o-1", S.CANCELLED))
        sub = self.service.watch_order("o-1")
        await sub.wait_until_idle(timeout=1)
        self.assertFalse(sub.is_polling)

        sub.refresh()
        await asyncio.sleep(POLL * 3)
        self.assertEqual(sub.fetch_count, 2)
        self.assertFalse(sub.is_polling)

    async def test_close_stops_immediately(self):
        self.serve(make_order("o-1", S.ON_TRIP))
        async with self.service.watch_order("o-1") as sub:
            await asyncio.sleep(POLL * 3)
        fetches = self.transport.get_order.await_count
        await asyncio.sleep(POLL * 5)

        self.assertTrue(sub.closed)
        self.assertFalse(sub.is_polling)
        self.assertEqual(self.transport.get_order.await_count, fetches)

    async def test_two_views_track_status_independently(self):
        self.serve(make_order("o-1", S.SEARCHING), make_order("o-1", S.ASSIGNED))
        first_changes, second_changes = [], []
        self.service.watch_order("o-1", on_status_change=lambda n, o: first_changes.append(n))
        await asyncio.sleep(POLL * 5)
        self.service.watch_order("o-1", on_status_change=lambda n, o: second_changes.append(n))
        await asyncio.sleep(POLL * 5)

        self.assertEqual(first_changes, [S.ASSIGNED])
        self.assertEqual(second_changes, [])


@pytest.mark.asyncio
async def test_list_subscription_refreshes_until_closed():
    transport = mock_transport()
    transport.list_orders.return_value = make_page(make_order("a"))
    service = OrderQueryService(transport, QueryCache(), list_refresh_s=POLL)
    pages = []

    sub = service.watch_list(OrderFilters(), on_update=pages.append)
    await asyncio.sleep(POLL * 8)
    await sub.close()
    count = transport.list_orders.await_count
    await asyncio.sleep(POLL * 3)

    assert count > 2
    assert transport.list_orders.await_count == count
    assert pages and pages[0].items[0].order_id == "a"
