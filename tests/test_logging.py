import json
import logging

from opsconsole.utils.logging import ConsoleFormatter, JSONFormatter, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("opsconsole.mapping", logging.WARNING, __file__, 10,
                               "driver dropped", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_carries_order_id():
    payload = json.loads(JSONFormatter().format(_record(order_id="o-1")))
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "opsconsole.mapping"
    assert payload["message"] == "driver dropped"
    assert payload["order_id"] == "o-1"
    assert "operation" not in payload


def test_console_formatter_scopes_by_order():
    assert "[opsconsole.mapping] (order o-1) driver dropped" in ConsoleFormatter().format(_record(order_id="o-1"))
    assert "[opsconsole.mapping] driver dropped" in ConsoleFormatter().format(_record())


def test_loggers_share_a_namespace():
    assert get_logger("OrderQuery").name == "opsconsole.OrderQuery"
