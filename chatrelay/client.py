"""ChatClient: send messages over an authenticated session and stream back the reply."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
import inspect
import logging
import os
from typing import Any

from ._exceptions import (
    AuthenticationError,
    ChatRelayError,
    SessionStaleError,
    StreamTerminatedError,
    TransportError,
    ValidationError,
    error_for_status,
)
from ._types import (
    ACTIONS,
    DONE_SENTINEL,
    AuthInfo,
    ConversationTurn,
    ExchangeSnapshot,
    IgnoredPayload,
    SessionArtifacts,
    new_id,
    parse_payload,
)
from .auth.session import AuthProvider, SessionTokenAuthProvider
from .cache import DEFAULT_ACCESS_TOKEN_TTL, AccessTokenCache
from .deadline import with_deadline
from .sse import EventStreamDecoder, StreamEvent
from .transport import (
    DEFAULT_BACKEND_BASE_URL,
    DEFAULT_USER_AGENT,
    RequestsTransport,
    StreamingResponse,
    Transport,
    TransportRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-davinci-002-render"
MODERATION_MODEL = "text-moderation-playground"

# One retry per call: an auth failure or a stale session gets a second attempt.
MAX_ATTEMPTS = 2

ProgressHandler = Callable[[ExchangeSnapshot], Awaitable[None] | None]


class ProgressRegistry:
    """Progress handlers keyed by the id of the message being sent."""

    def __init__(self) -> None:
        self._handlers: dict[str, ProgressHandler] = {}

    @contextmanager
    def register(self, message_id: str, handler: ProgressHandler | None) -> Iterator[None]:
        """Register ``handler`` for the duration of the block; always removed on exit."""
        if handler is not None:
            self._handlers[message_id] = handler
        try:
            yield
        finally:
            self._handlers.pop(message_id, None)

    async def notify(self, message_id: str, snapshot: ExchangeSnapshot) -> None:
        handler = self._handlers.get(message_id)
        if handler is None:
            return
        result = handler(snapshot)
        if inspect.isawaitable(result):
            await result

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class _Exchange:
    """Tracks the in-flight response of one call so a deadline can abort it."""

    def __init__(self) -> None:
        self.response: StreamingResponse | None = None
        self.cancelled = False

    def abort(self) -> None:
        self.cancelled = True
        if self.response is not None:
            self.response.abort()


class ChatClient:
    """
    Client for a conversational backend reached through a streaming transport.

    Usage:
        async with ChatClient(session_token="...") as client:
            reply = await client.send_message("Hello", on_progress=print)
            print(reply.response)
    """

    def __init__(
        self,
        transport: Transport | None = None,
        auth_provider: AuthProvider | None = None,
        *,
        session_token: str | None = None,
        clearance_token: str | None = None,
        access_token: str | None = None,
        access_token_ttl: float = DEFAULT_ACCESS_TOKEN_TTL,
        backend_base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        retry_delay: float = 1.0,
        profile: str = "default",
    ):
        """
        Initialize the client.

        Args:
            transport: Streaming transport; defaults to a RequestsTransport
            auth_provider: Source of access tokens; defaults to a SessionTokenAuthProvider
            session_token: Session token for the default auth provider
            clearance_token: Edge clearance cookie for the default auth provider
            access_token: Known-good access token to seed the cache with
            access_token_ttl: Seconds an access token is trusted before it is refreshed
            backend_base_url: Base URL for the default transport
            model: Model selector sent with every message
            retry_delay: Seconds to wait before retrying after a session refresh
            profile: Credential profile for the default auth provider
        """
        if auth_provider is None:
            auth_provider = SessionTokenAuthProvider(
                session_token, clearance_token, profile=profile
            )
        self._auth_provider = auth_provider
        self._artifacts = getattr(auth_provider, "artifacts", None) or SessionArtifacts(
            clearance_token=clearance_token
        )

        if transport is None:
            transport = RequestsTransport(
                backend_base_url
                or os.environ.get("CHATRELAY_BACKEND_BASE_URL")
                or DEFAULT_BACKEND_BASE_URL,
                user_agent=self._artifacts.user_agent or DEFAULT_USER_AGENT,
            )
        self._transport = transport

        self._token_cache = AccessTokenCache(ttl=access_token_ttl)
        access_token = access_token or os.environ.get("CHATRELAY_ACCESS_TOKEN")
        if access_token:
            self._token_cache.set(access_token)

        self.model = model
        self.retry_delay = retry_delay
        self._user: dict | None = None
        self._progress = ProgressRegistry()

    @property
    def user(self) -> dict | None:
        """The signed-in user reported by the last login, if any."""
        return self._user

    @property
    def progress_handlers(self) -> ProgressRegistry:
        return self._progress

    async def get_access_token(self, force: bool = False) -> str:
        """
        Return a valid access token, logging in when none is cached.

        Args:
            force: Drop the cached token and log in again

        Raises:
            AuthenticationError: If the auth provider cannot mint a token
        """
        if force:
            self._token_cache.delete()
        else:
            cached = self._token_cache.get()
            if cached:
                return cached

        logger.debug("Minting a new access token")
        info: AuthInfo = await self._auth_provider.login()
        if not info.access_token:
            raise AuthenticationError("Unauthorized", status_code=401)
        self._artifacts = info.artifacts
        if info.user:
            self._user = info.user
        self._token_cache.set(info.access_token)
        return info.access_token

    async def is_authenticated(self) -> bool:
        """True if a valid access token is cached or can be minted."""
        try:
            await self.get_access_token()
            return True
        except ChatRelayError as e:
            logger.debug("Not authenticated: %s", e)
            return False

    async def init_session(self) -> None:
        await self.get_access_token()

    async def close_session(self) -> None:
        self._token_cache.delete()

    async def reset_session(self) -> None:
        """Close the current session and start a new one."""
        await self.close_session()
        await self.init_session()

    async def send_message(
        self,
        message: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        message_id: str | None = None,
        action: str = "next",
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressHandler | None = None,
    ) -> ExchangeSnapshot:
        """
        Send a message and wait for the complete reply.

        Args:
            message: Prompt text to send
            conversation_id: Conversation to continue; omit to start a new one
            parent_message_id: Previous message in the conversation (default: random id)
            message_id: Id for the message being sent (default: random id)
            action: ``"next"`` or ``"variant"``
            timeout: Seconds to wait for the whole exchange (default: no limit)
            cancel_event: Setting this event aborts the exchange
            on_progress: Called with every updated snapshot while the reply streams

        Returns:
            The final snapshot: conversation id, reply message id and full reply text

        Raises:
            AuthenticationError: Access token rejected twice, or login failed
            SessionStaleError: Session still stale after a refresh
            TimeoutError: The exchange outlived ``timeout``
            OperationCancelledError: ``cancel_event`` was set
            TransportError: Any other network or status failure
        """
        if not message:
            raise ValidationError("Message must not be empty")
        if action not in ACTIONS:
            raise ValidationError(f"Unknown action {action!r}; expected one of {ACTIONS}")

        turn = ConversationTurn(
            content=message,
            message_id=message_id or new_id(),
            parent_message_id=parent_message_id or new_id(),
            conversation_id=conversation_id,
        )
        exchange = _Exchange()

        with self._progress.register(turn.message_id, on_progress):
            operation = self._send_with_retry(turn, action, exchange)
            if timeout is None and cancel_event is None:
                return await operation
            return await with_deadline(
                operation,
                timeout,
                cancel_event=cancel_event,
                on_cancel=exchange.abort,
                message="Timed out waiting for response",
            )

    def send_message_sync(self, message: str, **kwargs: Any) -> ExchangeSnapshot:
        """Blocking variant of :meth:`send_message` for code without an event loop."""
        return asyncio.run(self.send_message(message, **kwargs))

    async def _send_with_retry(
        self, turn: ConversationTurn, action: str, exchange: _Exchange
    ) -> ExchangeSnapshot:
        body = turn.to_request_body(action=action, model=self.model)
        force_login = False
        attempt = 0

        while True:
            attempt += 1
            access_token = await self.get_access_token(force=force_login)
            try:
                return await self._stream_exchange(turn, body, access_token, exchange)
            except AuthenticationError as e:
                if attempt >= MAX_ATTEMPTS:
                    logger.error("Access token rejected again; giving up: %s", e.message)
                    raise
                logger.warning("Access token rejected (%s); re-authenticating", e.status_code)
                force_login = True
            except SessionStaleError as e:
                await self._refresh_transport_session()
                if attempt >= MAX_ATTEMPTS:
                    logger.error("Session still stale after refresh; giving up: %s", e.message)
                    raise
                logger.warning("Session stale (%s); refreshed, retrying", e.status_code)
                force_login = False
                await asyncio.sleep(self.retry_delay)

    async def _refresh_transport_session(self) -> None:
        try:
            await self._transport.refresh_session()
        except TransportError as e:
            logger.warning("Error refreshing session: %s", e)

    async def _stream_exchange(
        self,
        turn: ConversationTurn,
        body: dict[str, Any],
        access_token: str,
        exchange: _Exchange,
    ) -> ExchangeSnapshot:
        request = TransportRequest(
            method="POST",
            path="/conversation",
            json=body,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "text/event-stream",
                "Content-Type": "application/json",
            },
            cookies=self._artifacts.cookies(),
        )
        response = await self._transport.perform(request)
        exchange.response = response
        if exchange.cancelled:
            response.abort()

        snapshot = ExchangeSnapshot(
            message_id=turn.message_id, conversation_id=turn.conversation_id
        )
        try:
            if not response.ok:
                raise await self._error_for_response(response)

            events: list[StreamEvent] = []
            decoder = EventStreamDecoder(events.append)
            try:
                async for chunk in response.iter_chunks():
                    decoder.feed(chunk)
                    for event in events:
                        if event.data == DONE_SENTINEL:
                            return snapshot
                        snapshot = await self._apply_event(turn, snapshot, event)
                    events.clear()
            except StreamTerminatedError as e:
                if snapshot.response:
                    logger.info("Stream terminated after partial response; keeping it: %s", e)
                    return snapshot
                raise
            decoder.close()
            return snapshot
        finally:
            exchange.response = None
            response.close()

    async def _apply_event(
        self, turn: ConversationTurn, snapshot: ExchangeSnapshot, event: StreamEvent
    ) -> ExchangeSnapshot:
        fragment = parse_payload(event.data)
        if isinstance(fragment, IgnoredPayload):
            logger.warning(
                "Skipping unparseable stream payload (%s): %.200s", fragment.reason, fragment.raw
            )
            return snapshot

        updated = snapshot.merge(fragment)
        if fragment.has_text:
            await self._progress.notify(turn.message_id, updated)
        return updated

    async def _error_for_response(self, response: StreamingResponse) -> ChatRelayError:
        body = None
        try:
            body = await response.json()
        except ChatRelayError:
            logger.debug("Error response had no JSON body (status %s)", response.status_code)
        return error_for_status(response.status_code, response.reason, body)

    async def send_moderation(self, text: str) -> dict[str, Any]:
        """Run ``text`` through the moderation endpoint and return its verdict."""
        access_token = await self.get_access_token()
        request = TransportRequest(
            method="POST",
            path="/moderations",
            json={"input": text, "model": MODERATION_MODEL},
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "*/*",
                "Content-Type": "application/json",
            },
            cookies=self._artifacts.cookies(),
            stream=False,
        )
        response = await self._transport.perform(request)
        try:
            if not response.ok:
                raise await self._error_for_response(response)
            return await response.json()
        finally:
            response.close()

    async def close(self) -> None:
        """Drop the session and release the transport."""
        await self.close_session()
        await self._transport.close()

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
