import logging
import sys
import json
import datetime
from typing import Any, Dict, Optional, Union

from opsconsole.settings import settings

class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings for structured logging.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        # Correlation fields passed through `extra=`
        for field in ("order_id", "operation"):
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_record["stack_trace"] = self.formatStack(record.stack_info)

        return json.dumps(log_record)

class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    """
    def format(self, record: logging.LogRecord) -> str:
        # 2024-05-01T08:00:00 [WARNING] [opsconsole.mapping] (order o-1) message
        timestamp = datetime.datetime.fromtimestamp(record.created).strftime('%Y-%m-%dT%H:%M:%S')
        order_id = getattr(record, "order_id", None)
        scope = f" (order {order_id})" if order_id else ""
        line = f"{timestamp} [{record.levelname}] [{record.name}]{scope} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line

def setup_logging(level: Optional[Union[int, str]] = None, log_format: Optional[str] = None) -> None:
    """
    Configures centralized logging for the console core.
    Defaults come from settings.LOG_LEVEL / settings.LOG_FORMAT.
    """
    if level is None:
        level = settings.LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    log_format = (log_format or settings.LOG_FORMAT).lower()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    if root_logger.handlers:
        root_logger.handlers.clear()

    root_logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

def get_logger(name: str) -> logging.Logger:
    """Returns a logger instance for a given component."""
    return logging.getLogger(f"opsconsole.{name}")
