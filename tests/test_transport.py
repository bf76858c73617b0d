import json
from unittest.mock import AsyncMock, call

import httpx
import pytest

from opsconsole.errors import (
    AuthorizationError, NotFoundError, RequestRejectedError, TransientTransportError,
)
from opsconsole.models import AssignmentRequest, GeoPoint, OrderFilters, OrderStatus, Priority
from opsconsole.settings import Settings
from opsconsole.status import ASSIGNABLE_STATUSES, TERMINAL_STATUSES
from opsconsole.transport import (
    FallbackOrderTransport, HttpOrderTransport, SyntheticOrderGenerator, SyntheticOrderTransport,
    build_transport,
)
from opsconsole.utils.metrics import MetricsManager
from tests.factories import make_page, mock_transport

# --- HTTP transport ---


def http_transport(handler, token="secret"):
    return HttpOrderTransport(base_url="http://api.test", token=token, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_list_orders_request_and_mapping():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "data": [{"order_id": "A1", "status": "SEARCHING"}, {"order_id": "A2", "status": "DELIVERED"}],
            "total": 41,
        })

    transport = http_transport(handler)
    page = await transport.list_orders(OrderFilters(page_number=2, page_size=20, search_query="ana"))
    await transport.close()

    request = seen[0]
    assert request.url.path == "/api/adapter/orders"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["X-Request-ID"]
    body = json.loads(request.content)
    assert body["pageNumber"] == 2
    assert body["pageSize"] == 20
    assert body["searchQuery"] == "ana"

    assert [o.order_id for o in page.items] == ["A1", "A2"]
    assert page.items[1].status == OrderStatus.DELIVERED
    assert page.total == 41
    assert page.total_pages == 3
    assert page.source == "live"


@pytest.mark.asyncio
async def test_each_request_gets_its_own_request_id():
    ids = []

    def handler(request):
        ids.append(request.headers["X-Request-ID"])
        return httpx.Response(200, json={"success": True})

    transport = http_transport(handler)
    await transport.cancel("o-1", "duplicate")
    await transport.cancel("o-2", "duplicate")
    assert len(set(ids)) == 2


@pytest.mark.asyncio
async def test_assign_payloads():
    bodies = []

    def handler(request):
        bodies.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True, "assignmentId": "AS-1", "failedOrders": ["b"]})

    transport = http_transport(handler)
    single = await transport.assign(AssignmentRequest(order_ids=["a"], driver_id="R1", notes="gate 2"))
    bulk = await transport.bulk_assign(AssignmentRequest(order_ids=["a", "b"], driver_id="R1"))

    assert bodies[0] == ("/api/adapter/assign/driver",
                         {"orderId": "a", "riderId": "R1", "notes": "gate 2", "notifyRider": True})
    assert bodies[1][1]["orderIds"] == ["a", "b"]
    assert bodies[1][1]["isBulk"] is True
    assert single.assignment_id == "AS-1"
    assert bulk.failed_orders == ["b"]
    assert bulk.affected == 1


@pytest.mark.asyncio
async def test_cancel_complete_prioritize_endpoints():
    paths = []

    def handler(request):
        paths.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True})

    transport = http_transport(handler)
    await transport.cancel("o-1", "customer request")
    await transport.complete_order("o-1")
    await transport.prioritize_order("o-1", Priority.URGENT)

    assert paths[0] == ("/AdminDeliveryOrder/CancelDeliveryOrder",
                        {"orderId": "o-1", "reason": "customer request", "cancelledBy": "Admin"})
    assert paths[1][0] == "/AdminDeliveryOrder/CompleteOrder"
    assert paths[2][1]["priority"] == "Urgent"


@pytest.mark.asyncio
async def test_nearby_drivers():
    def handler(request):
        body = json.loads(request.content)
        assert body == {"orderId": "o-1", "latitude": 14.6, "longitude": 121.0, "radius": 3000, "limit": 5}
        return httpx.Response(200, json={"drivers": [
            {"driverId": "D1", "riderId": "R1", "name": "Jose", "status": "Online", "distance": 800,
             "estimatedArrival": 240, "rating": 4.9, "vehicleType": "Motorcycle", "trustScore": 88},
        ], "totalCount": 1})

    transport = http_transport(handler)
    drivers = await transport.nearby_drivers("o-1", GeoPoint(lat=14.6, lng=121.0), 3000, 5)
    assert len(drivers) == 1
    assert drivers[0].assignee_id == "R1"
    assert drivers[0].trust_score == 88


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error_cls,code", [
    (401, AuthorizationError, "UNAUTHORIZED"),
    (403, AuthorizationError, "FORBIDDEN"),
    (404, NotFoundError, "NOT_FOUND"),
    (422, RequestRejectedError, "API_ERROR"),
    (503, TransientTransportError, "SERVER_ERROR"),
])
async def test_error_classification(status, error_cls, code):
    transport = http_transport(lambda request: httpx.Response(status, json={}))
    with pytest.raises(error_cls) as exc_info:
        await transport.get_order("o-1")
    assert exc_info.value.code == code
    assert exc_info.value.status == status


@pytest.mark.asyncio
async def test_unauthorized_requires_login():
    transport = http_transport(lambda request: httpx.Response(401))
    with pytest.raises(AuthorizationError) as exc_info:
        await transport.list_orders(OrderFilters())
    assert exc_info.value.requires_login


@pytest.mark.asyncio
async def test_rejection_keeps_server_message():
    transport = http_transport(lambda request: httpx.Response(400, json={"message": "Order already assigned"}))
    with pytest.raises(RequestRejectedError) as exc_info:
        await transport.assign(AssignmentRequest(order_ids=["a"], driver_id="R1"))
    assert exc_info.value.message == "Order already assigned"


@pytest.mark.asyncio
async def test_network_failure_and_timeout_are_transient():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientTransportError) as exc_info:
        await http_transport(refuse).list_orders(OrderFilters())
    assert exc_info.value.code == "NETWORK_ERROR"

    with pytest.raises(TransientTransportError) as exc_info:
        await http_transport(hang).list_orders(OrderFilters())
    assert exc_info.value.code == "TIMEOUT"

# --- Synthetic generator ---


def test_synthetic_pages_are_deterministic():
    generator = SyntheticOrderGenerator()
    first = generator.page(2, 20)
    second = generator.page(2, 20)
    assert first.items == second.items
    assert [o.order_id for o in first.items][:2] == ["synthetic-order-20", "synthetic-order-21"]


def test_synthetic_page_shape():
    generator = SyntheticOrderGenerator()
    page = generator.page(1, 20)
    assert page.total == 50
    assert page.total_pages == 3
    assert len(page.items) == 20
    assert len(generator.page(3, 20).items) == 10
    assert len(generator.page(1, 50).items) == 50
    assert all(order.synthetic for order in page.items)


def test_synthetic_orders_respect_invariants():
    for order in SyntheticOrderGenerator().page(1, 50).items:
        if order.status in ASSIGNABLE_STATUSES or order.status == OrderStatus.CANCELLED:
            assert order.driver is None
        else:
            assert order.driver is not None
        if order.status in TERMINAL_STATUSES:
            assert order.timeline.closed_at is not None
        else:
            assert order.timeline.closed_at is None


def test_synthetic_order_by_id():
    generator = SyntheticOrderGenerator()
    assert generator.order("synthetic-order-7") == generator.order("synthetic-order-7")
    assert generator.order("synthetic-order-3").status == OrderStatus.DELIVERED
    assert generator.order("ORD-unknown").order_id == "ORD-unknown"


def test_synthetic_detail_matches_list_row():
    generator = SyntheticOrderGenerator()
    rows = generator.page(1, 20).items + generator.page(2, 20).items
    assert generator.order("synthetic-order-3") == rows[3]
    assert generator.order("synthetic-order-27") == rows[27]

    small_pages = SyntheticOrderGenerator(page_size=10, anchor=generator.anchor)
    assert small_pages.order("synthetic-order-14") == small_pages.page(2, 10).items[4]


def test_synthetic_nearby_respects_radius_and_limit():
    generator = SyntheticOrderGenerator()
    drivers = generator.nearby("o-1", GeoPoint(lat=14.6, lng=121.0), 5000, 3)
    assert len(drivers) <= 3
    assert all(d.distance <= 5000 for d in drivers)
    assert [d.distance for d in drivers] == sorted(d.distance for d in drivers)
    assert drivers == generator.nearby("o-1", GeoPoint(lat=14.6, lng=121.0), 5000, 3)

# --- Fallback ---


def fallback_over(primary, **kwargs):
    sleep = AsyncMock()
    transport = FallbackOrderTransport(
        primary, SyntheticOrderGenerator(), retries=3, backoff_s=1, backoff_max_s=30, sleep=sleep, **kwargs
    )
    return transport, sleep


@pytest.mark.asyncio
async def test_network_failure_falls_back_to_fifty_synthetic_orders():
    primary = mock_transport()
    primary.list_orders.side_effect = TransientTransportError(0, "NETWORK_ERROR", "unreachable")
    transport, sleep = fallback_over(primary)
    events = []
    transport.on_fallback(events.append)
    before = MetricsManager().sample("opsconsole_read_fallbacks_total", operation="list_orders")

    page = await transport.list_orders(OrderFilters(page_size=50))

    assert page.total == 50
    assert len(page.items) == 50
    assert page.is_synthetic
    assert "NETWORK_ERROR" in page.fallback_reason
    assert transport.fallback_count == 1
    assert transport.last_fallback.operation == "list_orders"
    assert len(events) == 1
    assert MetricsManager().sample("opsconsole_read_fallbacks_total", operation="list_orders") == before + 1
    assert primary.list_orders.await_count == 3
    assert sleep.await_args_list == [call(1), call(2)]


@pytest.mark.asyncio
async def test_fallback_is_idempotent():
    primary = mock_transport()
    primary.list_orders.side_effect = TransientTransportError(503, "SERVER_ERROR", "down")
    transport, _ = fallback_over(primary)

    first = await transport.list_orders(OrderFilters(page_number=2, page_size=20))
    second = await transport.list_orders(OrderFilters(page_number=2, page_size=20))

    assert first.items == second.items
    assert first.total == second.total
    assert transport.fallback_count == 2


@pytest.mark.asyncio
async def test_retry_recovers_without_fallback():
    primary = mock_transport()
    live = make_page()
    primary.list_orders.side_effect = [TransientTransportError(503, "SERVER_ERROR", "blip"), live]
    transport, sleep = fallback_over(primary)

    page = await transport.list_orders(OrderFilters())
    assert page is live
    assert transport.fallback_count == 0
    assert sleep.await_count == 1


@pytest.mark.asyncio
async def test_authorization_error_is_not_retried_or_masked():
    primary = mock_transport()
    primary.list_orders.side_effect = AuthorizationError(401, "UNAUTHORIZED", "expired")
    transport, sleep = fallback_over(primary)

    with pytest.raises(AuthorizationError):
        await transport.list_orders(OrderFilters())
    assert primary.list_orders.await_count == 1
    assert transport.fallback_count == 0
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_not_found_propagates():
    primary = mock_transport()
    primary.get_order.side_effect = NotFoundError(404, "NOT_FOUND", "gone")
    transport, _ = fallback_over(primary)
    with pytest.raises(NotFoundError):
        await transport.get_order("o-1")


@pytest.mark.asyncio
async def test_detail_falls_back_to_synthetic_order():
    primary = mock_transport()
    primary.get_order.side_effect = TransientTransportError(0, "TIMEOUT", "slow")
    transport, _ = fallback_over(primary)
    order = await transport.get_order("synthetic-order-4")
    assert order.synthetic
    assert order.order_id == "synthetic-order-4"


@pytest.mark.asyncio
async def test_writes_are_not_retried():
    primary = mock_transport()
    primary.cancel.side_effect = TransientTransportError(503, "SERVER_ERROR", "down")
    transport, _ = fallback_over(primary)
    with pytest.raises(TransientTransportError):
        await transport.cancel("o-1", "reason")
    assert primary.cancel.await_count == 1
    assert transport.fallback_count == 0


def test_backoff_is_capped():
    transport = FallbackOrderTransport(mock_transport(), backoff_s=1, backoff_max_s=30)
    assert [transport.backoff_for(n) for n in range(6)] == [1, 2, 4, 8, 16, 30]

# --- Composition ---


def test_build_transport_selects_strategy():
    assert isinstance(build_transport(Settings(DATA_SOURCE="demo")), SyntheticOrderTransport)
    live = build_transport(Settings(DATA_SOURCE="live", READ_RETRIES=2))
    assert isinstance(live, FallbackOrderTransport)
    assert isinstance(live.primary, HttpOrderTransport)
    assert live.retries == 2


@pytest.mark.asyncio
async def test_demo_transport_acknowledges_writes():
    transport = SyntheticOrderTransport()
    result = await transport.bulk_assign(AssignmentRequest(order_ids=["a", "b"], driver_id="R1"))
    assert result.success
    assert result.affected == 2
