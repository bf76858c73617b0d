from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from opsconsole.settings import settings
from opsconsole.utils.logging import get_logger

logger = get_logger("tracing")

_initialized = False

def init_tracer(service_name: str) -> None:
    """Install a console-exporting tracer provider when OTEL_ENABLED is set."""
    global _initialized
    if not settings.OTEL_ENABLED or _initialized:
        return

    provider = TracerProvider()
    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _initialized = True
    logger.info(f"Initialized tracer for {service_name}")

def get_tracer(name: str) -> trace.Tracer:
    # Without an installed provider this is the no-op tracer.
    return trace.get_tracer(f"opsconsole.{name}")

def start_span(tracer: trace.Tracer, name: str, attributes: Optional[Dict[str, Any]] = None):
    return tracer.start_as_current_span(name, attributes=attributes or {})
