from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from opsconsole.console import OrderConsole
from opsconsole.errors import AuthorizationError, InvalidRequestError, NotFoundError, TransportError
from opsconsole.models import FailureReason, MutationOutcome, OrderFilters, OrderStatus
from opsconsole.query import OrderTab
from opsconsole.utils.logging import get_logger
from opsconsole.utils.metrics import MetricsManager

logger = get_logger("AdminAPI")

OUTCOME_STATUS = {
    FailureReason.NO_ORDERS: 400,
    FailureReason.NO_DRIVER_SELECTED: 400,
    FailureReason.MISSING_REASON: 400,
    FailureReason.NOT_ASSIGNABLE: 400,
    FailureReason.PERMISSION_DENIED: 403,
    FailureReason.UNAUTHORIZED: 401,
    FailureReason.NOT_FOUND: 404,
    FailureReason.COMMIT_IN_PROGRESS: 409,
    FailureReason.REJECTED: 422,
    FailureReason.TRANSPORT_ERROR: 502,
}


class AssignBody(BaseModel):
    order_ids: List[str]
    driver_id: str
    notes: Optional[str] = None


class CancelBody(BaseModel):
    order_ids: List[str]
    reason: str = Field(default="")


def _outcome_response(outcome: MutationOutcome) -> JSONResponse:
    body = asdict(outcome)
    body["reason"] = outcome.reason.value if outcome.reason else None
    body["partial"] = outcome.partial
    return JSONResponse(status_code=200 if outcome.ok else OUTCOME_STATUS[outcome.reason], content=body)


def create_admin_app(console: OrderConsole) -> FastAPI:
    """
    Creates the FastAPI Admin Application.

    Args:
        console: The OrderConsole whose transport, cache and actions the endpoints use.
    """
    app = FastAPI(title="Ops Console Admin API", version="0.1.0")

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
        if isinstance(exc, AuthorizationError):
            status = exc.status
        elif isinstance(exc, NotFoundError):
            status = 404
        else:
            status = 502
        logger.warning(f"{request.url.path} failed: {exc!r}")
        return JSONResponse(status_code=status, content={"code": exc.code, "message": exc.message})

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"code": "INVALID_REQUEST", "message": str(exc)})

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Reports the data source and whether reads have fallen back."""
        transport = console.transport
        fallbacks = getattr(transport, "fallback_count", 0)
        last = getattr(transport, "last_fallback", None)
        return {
            "status": "degraded" if fallbacks else "ok",
            "data_source": console.config.DATA_SOURCE,
            "fallbacks": fallbacks,
            "last_fallback": last.reason if last else None,
        }

    @app.get("/metrics")
    async def get_metrics() -> Response:
        return Response(content=generate_latest(MetricsManager().prom_registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/orders")
    async def list_orders(
        tab: OrderTab = OrderTab.ALL,
        page: int = Query(1, ge=1),
        page_size: int = Query(console.config.DEFAULT_PAGE_SIZE, ge=1, le=200),
        status: Optional[List[OrderStatus]] = Query(None),
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        filters = OrderFilters(page_number=page, page_size=page_size, status=status, search_query=search)
        view = await console.load_view(filters, tab)
        result = view["page"]
        return {
            "items": [o.model_dump(mode="json", by_alias=True) for o in view["orders"]],
            "total": result.total,
            "pageNumber": result.page_number,
            "pageSize": result.page_size,
            "totalPages": result.total_pages,
            "source": result.source,
            "fallbackReason": result.fallback_reason,
            "counts": {t.value: n for t, n in view["counts"].items()},
        }

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str) -> Dict[str, Any]:
        order = await console.queries.get_order(order_id)
        return order.model_dump(mode="json", by_alias=True)

    @app.get("/orders/{order_id}/nearby")
    async def nearby_drivers(order_id: str,
                             radius: Optional[int] = Query(None, ge=1),
                             limit: Optional[int] = Query(None, ge=1)) -> Dict[str, Any]:
        order = await console.queries.get_order(order_id)
        pickup = order.route.pickup.point if order.route.pickup.has_location else None
        drivers = await console.new_assignment().lookup_nearby(order_id, pickup, radius, limit)
        return {
            "drivers": [d.model_dump(mode="json", by_alias=True) for d in drivers],
            "totalCount": len(drivers),
        }

    @app.post("/orders/assign")
    async def assign_orders(body: AssignBody) -> JSONResponse:
        coordinator = console.new_assignment()
        outcome = await coordinator.commit(body.order_ids, body.driver_id, body.notes)
        return _outcome_response(outcome)

    @app.post("/orders/cancel")
    async def cancel_orders(body: CancelBody) -> JSONResponse:
        if len(body.order_ids) == 1:
            outcome = await console.actions.cancel(body.order_ids[0], body.reason)
        else:
            outcome = await console.actions.bulk_cancel(body.order_ids, body.reason)
        return _outcome_response(outcome)

    return app
