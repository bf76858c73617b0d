import uuid
from typing import Any, Dict, List, Optional, Sequence

import httpx
from opentelemetry import trace

from opsconsole.errors import (
    AuthorizationError, NotFoundError, RequestRejectedError, TransientTransportError, TransportError,
)
from opsconsole.mapping import map_upstream_order, map_upstream_orders
from opsconsole.models import (
    AssignmentRequest, GeoPoint, NearbyDriver, Order, OrderFilters, OrdersPage, Priority,
    TransportResult,
)
from opsconsole.settings import settings
from opsconsole.transport.base import OrderTransport
from opsconsole.utils.logging import get_logger
from opsconsole.utils.tracing import get_tracer, start_span

logger = get_logger("HttpTransport")

ENDPOINTS = {
    "list": "api/adapter/orders",
    "detail": "api/adapter/orders/{order_id}",
    "assign": "api/adapter/assign/driver",
    "nearby": "api/adapter/assign/nearby",
    "cancel": "AdminDeliveryOrder/CancelDeliveryOrder",
    "bulk_cancel": "AdminDeliveryOrder/BulkCancelDeliveryOrders",
    "complete": "AdminDeliveryOrder/CompleteOrder",
    "prioritize": "AdminDeliveryOrder/PrioritizeOrder",
}


class HttpOrderTransport(OrderTransport):
    """
    REST/JSON implementation of OrderTransport over httpx.

    Every request carries a bounded timeout, the bearer token (if configured)
    and a fresh X-Request-ID. Failures are classified into the
    `opsconsole.errors` taxonomy; nothing is retried here.
    """
    def __init__(self,
                 base_url: Optional[str] = None,
                 token: Optional[str] = None,
                 timeout_s: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = token if token is not None else settings.API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            timeout=httpx.Timeout(timeout_s if timeout_s is not None else settings.API_TIMEOUT_S),
            headers=headers,
            transport=transport,
            event_hooks={"request": [self._tag_request]},
        )
        self.tracer = get_tracer("transport")

    @staticmethod
    async def _tag_request(request: httpx.Request) -> None:
        request.headers["X-Request-ID"] = str(uuid.uuid4())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> Any:
        with start_span(self.tracer, f"transport.{operation}", {"http.route": path}) as span:
            try:
                response = await self._client.post(path, json=payload)
            except httpx.TimeoutException as e:
                error = TransientTransportError(0, "TIMEOUT", f"Request timed out: {operation}")
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR))
                raise error from e
            except httpx.RequestError as e:
                error = TransientTransportError(
                    0, "NETWORK_ERROR", "Network error. Please check your connection and try again."
                )
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR))
                raise error from e

            span.set_attribute("http.status_code", response.status_code)
            if response.is_error:
                span.set_status(trace.Status(trace.StatusCode.ERROR))
                raise self._classify(response)

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise TransientTransportError(
                    response.status_code, "BAD_RESPONSE", f"Malformed JSON from {operation}"
                ) from e

    @staticmethod
    def _classify(response: httpx.Response) -> TransportError:
        status = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = None
        body = data if isinstance(data, dict) else {}
        message = body.get("message")

        if status == 401:
            return AuthorizationError(401, "UNAUTHORIZED", "Session expired. Please log in again.", data)
        if status == 403:
            return AuthorizationError(
                403, "FORBIDDEN", message or "You do not have permission to perform this action.", data
            )
        if status == 404:
            return NotFoundError(404, body.get("code") or "NOT_FOUND", message or "Order not found.", data)
        if status >= 500:
            return TransientTransportError(
                status, "SERVER_ERROR", "Server error occurred. Please try again later.", data
            )
        return RequestRejectedError(
            status,
            body.get("code") or "API_ERROR",
            message or "An error occurred while processing your request.",
            data,
        )

    @staticmethod
    def _result(data: Any, affected: int = 1) -> TransportResult:
        if not isinstance(data, dict):
            return TransportResult(success=True, affected=affected)
        failed = [str(order_id) for order_id in data.get("failedOrders") or data.get("failed_orders") or []]
        return TransportResult(
            success=bool(data.get("success", True)),
            message=data.get("message"),
            assignment_id=data.get("assignmentId") or data.get("assignment_id"),
            affected=affected - len(failed),
            failed_orders=failed,
        )

    async def list_orders(self, filters: OrderFilters) -> OrdersPage:
        payload: Dict[str, Any] = {
            "pageNumber": filters.page_number,
            "pageSize": filters.page_size,
            "status": [s.value for s in filters.status] if filters.status else None,
            "serviceType": [s.value for s in filters.service_type] if filters.service_type else None,
            "priority": [p.value for p in filters.priority] if filters.priority else None,
            "startDate": filters.start_date.isoformat() if filters.start_date else None,
            "endDate": filters.end_date.isoformat() if filters.end_date else None,
            "searchQuery": filters.search_query,
        }
        data = await self._post("list", ENDPOINTS["list"], payload)
        records = (data.get("data") or data.get("items") or []) if isinstance(data, dict) else data
        items = map_upstream_orders(records)
        total = int(data.get("total") or len(items)) if isinstance(data, dict) else len(items)
        return OrdersPage(
            items=items,
            total=total,
            page_number=filters.page_number,
            page_size=filters.page_size,
            total_pages=OrdersPage.pages_for(total, filters.page_size),
        )

    async def get_order(self, order_id: str) -> Order:
        data = await self._post("detail", ENDPOINTS["detail"].format(order_id=order_id), {"orderId": order_id})
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if not data:
            raise NotFoundError(404, "NOT_FOUND", f"Order {order_id} not found.")
        return map_upstream_order(data)

    async def assign(self, request: AssignmentRequest) -> TransportResult:
        data = await self._post("assign", ENDPOINTS["assign"], {
            "orderId": request.order_ids[0],
            "riderId": request.driver_id,
            "notes": request.notes,
            "notifyRider": True,
        })
        return self._result(data)

    async def bulk_assign(self, request: AssignmentRequest) -> TransportResult:
        data = await self._post("bulk_assign", ENDPOINTS["assign"], {
            "orderIds": list(request.order_ids),
            "riderId": request.driver_id,
            "notes": request.notes,
            "isBulk": True,
        })
        return self._result(data, affected=len(request.order_ids))

    async def cancel(self, order_id: str, reason: str) -> TransportResult:
        data = await self._post("cancel", ENDPOINTS["cancel"], {
            "orderId": order_id,
            "reason": reason,
            "cancelledBy": "Admin",
        })
        return self._result(data)

    async def bulk_cancel(self, order_ids: Sequence[str], reason: str) -> TransportResult:
        data = await self._post("bulk_cancel", ENDPOINTS["bulk_cancel"], {
            "orderIds": list(order_ids),
            "reason": reason,
            "cancelledBy": "Admin",
        })
        return self._result(data, affected=len(order_ids))

    async def nearby_drivers(self, order_id: str, location: GeoPoint, radius: int, limit: int) -> List[NearbyDriver]:
        data = await self._post("nearby", ENDPOINTS["nearby"], {
            "orderId": order_id,
            "latitude": location.lat,
            "longitude": location.lng,
            "radius": radius,
            "limit": limit,
        })
        records = (data.get("drivers") or []) if isinstance(data, dict) else (data or [])
        drivers = []
        for record in records:
            try:
                drivers.append(NearbyDriver.model_validate(record))
            except ValueError as e:
                logger.warning(f"Skipping malformed nearby driver {record!r}: {e}")
        return drivers

    async def complete_order(self, order_id: str, notes: Optional[str] = None) -> TransportResult:
        data = await self._post("complete", ENDPOINTS["complete"], {"orderId": order_id, "notes": notes})
        return self._result(data)

    async def prioritize_order(self, order_id: str, priority: Priority, reason: Optional[str] = None) -> TransportResult:
        data = await self._post("prioritize", ENDPOINTS["prioritize"], {
            "orderId": order_id,
            "priority": priority.value,
            "reason": reason,
        })
        return self._result(data)
