"""Typed error hierarchy for chatrelay."""

from typing import Any


class ChatRelayError(Exception):
    """Base exception for all chatrelay errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        status_text: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.status_text = status_text
        self.code = code


class AuthenticationError(ChatRelayError):
    """401: access token rejected or could not be minted."""

    @classmethod
    def no_session_token(cls) -> "AuthenticationError":
        """Create error for a missing session token with guidance."""
        message = (
            "No session token provided. Choose one of:\n"
            "  • Pass session_token= to the auth provider\n"
            '  • Set environment variable: export CHATRELAY_SESSION_TOKEN="..."\n'
            "  • Store one for the profile with CredentialManager.save_session_token()"
        )
        return cls(message, status_code=401, code="no_session_token")


class SessionExpiredError(AuthenticationError):
    """The long-lived session token itself has expired; a new login is required."""


class SessionStaleError(ChatRelayError):
    """403: the transport's side-channel clearance has expired."""


class TransportError(ChatRelayError):
    """Any other network or status failure."""


class RateLimitError(TransportError):
    """429: too many requests."""


class ServiceUnavailableError(TransportError):
    """503: the service is at capacity."""


class StreamTerminatedError(TransportError):
    """The connection was cut while the response body was streaming."""


class TimeoutError(ChatRelayError):
    """Raised when an operation exceeds its deadline."""

    def __init__(self, message: str, timeout: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, code="timeout", **kwargs)
        self.timeout = timeout


class OperationCancelledError(ChatRelayError):
    """Raised when an operation is aborted through an external cancel signal."""

    def __init__(self, message: str = "This operation was aborted.", **kwargs: Any) -> None:
        super().__init__(message, code="cancelled", **kwargs)


class ValidationError(ChatRelayError):
    """Raised when arguments violate an operation's contract."""


# Map HTTP status codes to exception classes.
STATUS_MAP: dict[int, type[ChatRelayError]] = {
    401: AuthenticationError,
    403: SessionStaleError,
    429: RateLimitError,
    503: ServiceUnavailableError,
}


def error_for_status(
    status_code: int, status_text: str | None = None, body: Any = None
) -> ChatRelayError:
    """Build the typed error for a non-2xx response.

    ``body`` may be the decoded JSON error payload; ``{"detail": ...}`` and
    ``{"error": {"message": ...}}`` shapes are recognised.
    """
    message = f"Request failed with status {status_code}"
    if status_text:
        message = f"{message} {status_text}"

    detail = None
    if isinstance(body, dict):
        error_obj = body.get("error")
        if isinstance(error_obj, dict):
            detail = error_obj.get("message")
        elif isinstance(error_obj, str):
            detail = error_obj
        detail = detail or body.get("detail")
    if isinstance(detail, str) and detail:
        message = f"{message}: {detail}"

    exc_cls = STATUS_MAP.get(status_code, TransportError)
    return exc_cls(message, status_code=status_code, status_text=status_text)
