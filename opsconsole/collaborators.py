from typing import Iterable, List, Protocol, Tuple, runtime_checkable

from opsconsole.utils.logging import get_logger

logger = get_logger("notify")

ASSIGN = "orders:assign"
CANCEL = "orders:cancel"
COMPLETE = "orders:complete"
PRIORITIZE = "orders:prioritize"


@runtime_checkable
class PermissionChecker(Protocol):
    """Capability check owned by the auth layer. The core only asks."""

    def has_permission(self, action: str) -> bool:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget sink for operator-facing messages."""

    def notify(self, kind: str, message: str) -> None:
        ...


class AllowAll:
    def has_permission(self, action: str) -> bool:
        return True


class StaticPermissions:
    """Fixed set of granted actions, e.g. loaded from the operator's role."""

    def __init__(self, granted: Iterable[str]):
        self.granted = frozenset(granted)

    def has_permission(self, action: str) -> bool:
        return action in self.granted


class LoggingNotifier:
    def notify(self, kind: str, message: str) -> None:
        if kind == "error":
            logger.error(message)
        elif kind == "warning":
            logger.warning(message)
        else:
            logger.info(message)


class RecordingNotifier:
    """Keeps every notification; used by tests and the admin API."""

    def __init__(self):
        self.messages: List[Tuple[str, str]] = []

    def notify(self, kind: str, message: str) -> None:
        self.messages.append((kind, message))

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.messages]
