from opsconsole.console import OrderConsole
from opsconsole.models import Order, OrderFilters, OrderStatus, MutationOutcome, FailureReason
from opsconsole.settings import settings
from opsconsole.transport import build_transport

__version__ = "0.1.0"

__all__ = [
    "OrderConsole",
    "Order",
    "OrderFilters",
    "OrderStatus",
    "MutationOutcome",
    "FailureReason",
    "settings",
    "build_transport",
]
