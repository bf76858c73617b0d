import json

from typer.testing import CliRunner

from opsconsole.cli import app

runner = CliRunner()


def invoke(*args):
    # Logs share stdout with command output
    return runner.invoke(app, ["--demo", "--log-level", "error", *args])


def test_list_orders_demo():
    result = invoke("orders", "list", "--tab", "completed")
    assert result.exit_code == 0, result.output
    assert "synthetic data" in result.output
    assert "Page 1/3 of 50 orders" in result.output
    assert "synthetic-order-3" in result.output
    assert "synthetic-order-0 " not in result.output


def test_list_orders_json():
    result = invoke("orders", "list", "--page-size", "5", "--json")
    assert result.exit_code == 0, result.output
    items = json.loads(result.output)
    assert [o["orderId"] for o in items] == [f"synthetic-order-{i}" for i in range(5)]


def test_show_order():
    result = invoke("orders", "show", "synthetic-order-4")
    assert result.exit_code == 0, result.output
    order = json.loads(result.output)
    assert order["status"] == "Cancelled"
    assert order["timeline"]["cancelledAt"] is not None


def test_watch_stops_at_terminal_status():
    result = invoke("orders", "watch", "synthetic-order-3", "--interval", "0.01",
                    "--timeout", "5")
    assert result.exit_code == 0, result.output
    assert "Delivered" in result.output
    assert "Stopped watching" not in result.output


def test_assign_and_cancel():
    result = invoke("orders", "assign", "synthetic-order-0", "synthetic-order-5",
                    "--driver", "synthetic-rider-2")
    assert result.exit_code == 0, result.output
    assert result.output.startswith("OK:")

    result = invoke("orders", "cancel", "synthetic-order-0", "--reason", "duplicate")
    assert result.exit_code == 0, result.output


def test_cancel_requires_reason():
    result = invoke("orders", "cancel", "synthetic-order-0", "--reason", " ")
    assert result.exit_code == 1
    assert "missing_reason" in result.output


def test_nearby_drivers():
    result = invoke("drivers", "nearby", "synthetic-order-0", "--radius", "10000",
                    "--limit", "3", "--sort-by", "rating")
    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if line.startswith("synthetic-rider-")]
    assert len(lines) == 3
