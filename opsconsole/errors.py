from typing import Any, Optional


class OpsConsoleError(Exception):
    """Base class for all console-core errors."""


class InvalidRequestError(OpsConsoleError):
    """
    Raised for requests rejected locally, before any network call
    (missing pickup location, empty order set, blank cancel reason...).
    """


class TransportError(OpsConsoleError):
    """
    A failure reported by (or while reaching) the remote order API.

    Attributes:
        status (int): HTTP status, 0 when no response was received.
        code (str): Machine-readable error code.
        data: Decoded error body, if any.
    """
    def __init__(self, status: int, code: str, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.data = data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class TransientTransportError(TransportError):
    """Network failure, timeout or 5xx. Reads may retry and fall back; writes surface it."""


class AuthorizationError(TransportError):
    """401/403. Never retried."""

    @property
    def requires_login(self) -> bool:
        return self.status == 401


class NotFoundError(TransportError):
    """The requested order does not exist upstream."""


class RequestRejectedError(TransportError):
    """Any other 4xx: the server understood and refused the request."""
