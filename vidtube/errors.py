"""Error taxonomy shared by the transport, the session and the UI.

Only ``UnauthorizedError`` is intercepted (by the session manager); every
other class travels unchanged to the call site that issued the request.
"""
from typing import Any, Optional


class ApiError(Exception):
    """Base class for every failure talking to the backend."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload

    def __str__(self) -> str:
        if self.status:
            return f"{self.message} (HTTP {self.status})"
        return self.message


class UnauthorizedError(ApiError):
    """Access credential missing, expired or rejected."""


class SessionTerminatedError(UnauthorizedError):
    """The session could not be recovered; the user has to sign in again."""


class ClientError(ApiError):
    """Request rejected by the backend (4xx other than 401)."""


class ValidationError(ClientError):
    pass


class NotFoundError(ClientError):
    pass


class ConflictError(ClientError):
    """E.g. the video is already in watch later."""


class RateLimitedError(ClientError):
    pass


class ServerError(ApiError):
    """5xx from the backend. Never retried automatically."""


class NetworkError(ApiError):
    """No response at all: connection failure or client-side timeout."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class AuthStorageError(Exception):
    """The keyring could not read or write persisted session state."""


_STATUS_CLASSES = {
    400: ValidationError,
    401: UnauthorizedError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitedError,
}


def error_for_status(status: int, payload: Any = None) -> ApiError:
    """Build the exception matching an HTTP error status."""
    message = None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
    if not message:
        message = _default_message(status)

    cls = _STATUS_CLASSES.get(status)
    if cls is None:
        cls = ServerError if status >= 500 else ClientError
    return cls(message, status=status, payload=payload)


def _default_message(status: int) -> str:
    if status == 401:
        return "Please log in to continue"
    if status == 404:
        return "Not found"
    if status == 429:
        return "Too many requests. Please wait."
    if status >= 500:
        return "Server error. Please try again later."
    return f"Request failed with status {status}"


def user_message(exc: BaseException) -> str:
    """Short, user-facing text for a notification."""
    if isinstance(exc, NetworkError):
        if exc.timed_out:
            return "The server took too long to respond. Please try again."
        return "Network error. Please check your connection."
    if isinstance(exc, SessionTerminatedError):
        return "Your session has expired. Please log in again."
    if isinstance(exc, ApiError):
        return exc.message
    return str(exc) or "An unexpected error occurred"
