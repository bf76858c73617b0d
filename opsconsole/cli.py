import asyncio
import json
from typing import List, Optional

import typer

from opsconsole.assignment import rank_candidates
from opsconsole.console import OrderConsole
from opsconsole.errors import OpsConsoleError
from opsconsole.models import GeoPoint, MutationOutcome, Order, OrderFilters, OrderStatus
from opsconsole.query import OrderTab
from opsconsole.settings import Settings, settings
from opsconsole.status import is_terminal, status_badge
from opsconsole.utils.logging import setup_logging

app = typer.Typer(help="Ops Console order management")
orders_app = typer.Typer(help="List, inspect, watch, assign and cancel orders")
drivers_app = typer.Typer(help="Driver lookup")
app.add_typer(orders_app, name="orders")
app.add_typer(drivers_app, name="drivers")


@app.callback()
def main(ctx: typer.Context,
         demo: bool = typer.Option(False, "--demo", help="Use synthetic data; never touch the API"),
         log_level: Optional[str] = typer.Option(None, help="Override OPSCONSOLE_LOG_LEVEL")):
    """
    Operations console for ride-hailing orders.
    """
    setup_logging(level=log_level)
    ctx.obj = Settings(DATA_SOURCE="demo") if demo else settings


def _console(ctx: typer.Context) -> OrderConsole:
    return OrderConsole(config=ctx.obj or settings)


def _run(coro):
    try:
        return asyncio.run(coro)
    except OpsConsoleError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _order_line(order: Order) -> str:
    badge = status_badge(order.status)
    driver = order.driver.name if order.driver else "-"
    flag = " [synthetic]" if order.synthetic else ""
    return (f"{order.order_id:<22} {badge.label:<11} {order.service_type.value:<9} "
            f"{order.customer.name:<20} {driver:<18} {order.pricing.total:>8.2f}{flag}")


def _report(outcome: MutationOutcome) -> None:
    if outcome.ok:
        typer.echo(f"OK: {outcome.message}")
        if outcome.failed_orders:
            typer.echo(f"Failed: {', '.join(outcome.failed_orders)}")
        return
    typer.echo(f"Failed ({outcome.reason.value}): {outcome.message}", err=True)
    raise typer.Exit(code=1)


@orders_app.command("list")
def list_orders(ctx: typer.Context,
                tab: OrderTab = typer.Option(OrderTab.ALL, help="all | active | completed | cancelled"),
                page: int = typer.Option(1, min=1),
                page_size: int = typer.Option(settings.DEFAULT_PAGE_SIZE, min=1),
                status: Optional[List[OrderStatus]] = typer.Option(None, help="Filter by status (repeatable)"),
                search: Optional[str] = typer.Option(None, help="Search query"),
                as_json: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """
    Lists one page of orders, split by tab.
    """
    async def _list():
        async with _console(ctx) as console:
            filters = OrderFilters(page_number=page, page_size=page_size, status=status or None, search_query=search)
            view = await console.load_view(filters, tab)
            result = view["page"]
            if as_json:
                typer.echo(json.dumps([o.model_dump(mode="json", by_alias=True) for o in view["orders"]], indent=2))
                return
            if result.is_synthetic:
                typer.echo(f"⚠️  Showing synthetic data ({result.fallback_reason or 'demo mode'})")
            counts = ", ".join(f"{t.value}={n}" for t, n in view["counts"].items())
            typer.echo(f"Page {result.page_number}/{result.total_pages} of {result.total} orders ({counts})")
            for order in view["orders"]:
                typer.echo(_order_line(order))

    _run(_list())


@orders_app.command("show")
def show_order(ctx: typer.Context, order_id: str = typer.Argument(..., help="Order id")):
    """
    Shows one order in full.
    """
    async def _show():
        async with _console(ctx) as console:
            order = await console.queries.get_order(order_id)
            typer.echo(json.dumps(order.model_dump(mode="json", by_alias=True), indent=2))

    _run(_show())


@orders_app.command("watch")
def watch_order(ctx: typer.Context,
                order_id: str = typer.Argument(..., help="Order id"),
                interval: float = typer.Option(settings.POLL_INTERVAL_S, help="Seconds between polls"),
                timeout: float = typer.Option(600.0, help="Give up after this many seconds")):
    """
    Polls an order until it reaches a terminal status.
    """
    async def _watch():
        done = asyncio.Event()

        def on_update(order: Order):
            typer.echo(f"{order.updated_at.isoformat()} {status_badge(order.status).label}")
            if is_terminal(order.status):
                done.set()

        def on_status_change(new: OrderStatus, old: OrderStatus):
            typer.echo(f"Status changed: {old.value} -> {new.value}")

        def on_error(error: Exception):
            typer.echo(f"Refresh failed: {error}", err=True)
            if getattr(error, "status", None) in (401, 403, 404):
                done.set()

        async with _console(ctx) as console:
            async with console.queries.watch_order(order_id, on_update, on_status_change, on_error, interval):
                try:
                    await asyncio.wait_for(done.wait(), timeout)
                except asyncio.TimeoutError:
                    typer.echo(f"Stopped watching after {timeout}s")

    _run(_watch())


@orders_app.command("assign")
def assign_orders(ctx: typer.Context,
                  order_ids: List[str] = typer.Argument(..., help="One or more order ids"),
                  driver: str = typer.Option(..., "--driver", help="Driver (rider) id"),
                  notes: Optional[str] = typer.Option(None, help="Notes for the driver")):
    """
    Assigns a driver to one order, or to several in one bulk call.
    """
    async def _assign():
        async with _console(ctx) as console:
            return await console.new_assignment().commit(order_ids, driver, notes)

    _report(_run(_assign()))


@orders_app.command("cancel")
def cancel_orders(ctx: typer.Context,
                  order_ids: List[str] = typer.Argument(..., help="One or more order ids"),
                  reason: str = typer.Option(..., "--reason", help="Cancellation reason")):
    """
    Cancels one or more orders.
    """
    async def _cancel():
        async with _console(ctx) as console:
            if len(order_ids) == 1:
                return await console.actions.cancel(order_ids[0], reason)
            return await console.actions.bulk_cancel(order_ids, reason)

    _report(_run(_cancel()))


@drivers_app.command("nearby")
def nearby_drivers(ctx: typer.Context,
                   order_id: str = typer.Argument(..., help="Order id"),
                   radius: int = typer.Option(settings.NEARBY_RADIUS_M, help="Search radius in meters"),
                   limit: int = typer.Option(settings.NEARBY_LIMIT, help="Maximum drivers"),
                   sort_by: str = typer.Option("distance", help="distance | eta | rating | trust_score")):
    """
    Lists drivers near an order's pickup point.
    """
    async def _nearby():
        async with _console(ctx) as console:
            order = await console.queries.get_order(order_id)
            pickup: Optional[GeoPoint] = order.route.pickup.point if order.route.pickup.has_location else None
            drivers = await console.new_assignment().lookup_nearby(order_id, pickup, radius, limit)
            if not drivers:
                typer.echo("No drivers nearby.")
                return
            for d in rank_candidates(drivers, sort_by):
                typer.echo(f"{d.assignee_id:<22} {d.name:<18} {d.distance:>7.0f}m "
                           f"{d.estimated_arrival / 60:>5.1f}min {d.rating:.1f}★ {d.vehicle_type}")

    _run(_nearby())


@app.command()
def serve(ctx: typer.Context,
          host: str = typer.Option("0.0.0.0"),
          port: int = typer.Option(settings.ADMIN_PORT)):
    """
    Runs the admin API.
    """
    import uvicorn
    from opsconsole.admin import create_admin_app

    app_ = create_admin_app(_console(ctx))
    uvicorn.run(app_, host=host, port=port)


if __name__ == "__main__":
    app()
