"""
chatrelay - streaming client for session-authenticated conversational backends.

Keeps a bearer token fresh, sends messages, and reports the reply as it streams.
"""

__version__ = "0.1.0"

from ._exceptions import (
    AuthenticationError,
    ChatRelayError,
    OperationCancelledError,
    RateLimitError,
    ServiceUnavailableError,
    SessionExpiredError,
    SessionStaleError,
    StreamTerminatedError,
    TimeoutError,
    TransportError,
    ValidationError,
)
from ._types import AuthInfo, ConversationTurn, ExchangeSnapshot, SessionArtifacts
from .auth import AuthProvider, CredentialManager, SessionTokenAuthProvider
from .cache import AccessTokenCache
from .client import ChatClient, ProgressRegistry
from .deadline import with_deadline
from .sse import EventStreamDecoder, StreamEvent
from .transport import RequestsTransport, Transport, TransportRequest

__all__ = [
    "AccessTokenCache",
    "AuthInfo",
    "AuthProvider",
    "AuthenticationError",
    # Main client
    "ChatClient",
    "ChatRelayError",
    "ConversationTurn",
    "CredentialManager",
    "EventStreamDecoder",
    "ExchangeSnapshot",
    "OperationCancelledError",
    "ProgressRegistry",
    "RateLimitError",
    "RequestsTransport",
    "ServiceUnavailableError",
    "SessionArtifacts",
    "SessionExpiredError",
    "SessionStaleError",
    "SessionTokenAuthProvider",
    "StreamEvent",
    "StreamTerminatedError",
    "TimeoutError",
    "Transport",
    "TransportError",
    "TransportRequest",
    "ValidationError",
    "with_deadline",
]
