"""Single-slot, time-bounded cache for the short-lived access token."""

from collections.abc import Callable
import logging
import time

from ._exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_TTL = 60 * 60  # 1 hour


class AccessTokenCache:
    """
    Holds at most one access token and forgets it once its TTL elapses.

    Expiry is checked lazily on :meth:`get`; nothing runs in the background.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_ACCESS_TOKEN_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValidationError(f"Access token TTL must be positive, got {ttl!r}")
        self.ttl = ttl
        self._clock = clock
        self._value: str | None = None
        self._expires_at: float | None = None

    def get(self) -> str | None:
        """Return the cached token, or None if absent or expired."""
        if self._value is None or self._expires_at is None:
            return None
        if self._clock() >= self._expires_at:
            logger.debug("Cached access token expired")
            self.delete()
            return None
        return self._value

    def set(self, value: str) -> None:
        """Store ``value``, replacing any previous token and restarting the TTL."""
        self._value = value
        self._expires_at = self._clock() + self.ttl

    def delete(self) -> None:
        """Invalidate the cached token."""
        self._value = None
        self._expires_at = None

    @property
    def expires_at(self) -> float | None:
        return self._expires_at
