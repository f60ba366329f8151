"""Streaming transport: the interface the client consumes and a requests-based implementation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
import json
import logging
import threading
from typing import Any, Protocol

import requests

from ._exceptions import (
    OperationCancelledError,
    StreamTerminatedError,
    TimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_BASE_URL = "https://chat.openai.com/backend-api"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "x-openai-assistant-app-id": "",
    "accept-language": "en-US,en;q=0.9",
    "origin": "https://chat.openai.com",
    "referer": "https://chat.openai.com/chat",
}


@dataclass
class TransportRequest:
    """A request to send through a :class:`Transport`."""

    method: str
    path: str
    json: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    stream: bool = True


class StreamingResponse(Protocol):
    """Response whose body is consumed chunk by chunk."""

    status_code: int
    reason: str | None

    @property
    def ok(self) -> bool: ...

    def iter_chunks(self) -> AsyncIterator[bytes]: ...

    async def read(self) -> bytes: ...

    async def json(self) -> Any: ...

    def abort(self) -> None: ...

    def close(self) -> None: ...


class Transport(Protocol):
    """Anything that can open a streaming call to the service."""

    async def perform(self, request: TransportRequest) -> StreamingResponse: ...

    async def refresh_session(self) -> None: ...

    async def close(self) -> None: ...


class RequestsStreamingResponse:
    """Adapts a ``requests.Response`` opened with ``stream=True``.

    Reads run in worker threads. ``abort()`` may be called from the event loop
    while one of them is blocked on the socket, so it only shuts the socket
    down; the blocked reader sees end of stream and releases the response
    itself once it returns.
    """

    def __init__(self, response: requests.Response):
        self._response = response
        self._aborted = False
        self._close_requested = False
        self._released = False
        self._reading = False
        self._lock = threading.Lock()
        self.status_code = response.status_code
        self.reason = response.reason

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def closed(self) -> bool:
        """True once the underlying response has been released."""
        return self._released

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield body chunks as they arrive; each read runs in a worker thread."""
        iterator = self._response.iter_content(chunk_size=None)
        while True:
            try:
                chunk = await asyncio.to_thread(self._read_next, iterator)
            except (requests.RequestException, OSError, ValueError, AttributeError) as e:
                if self._aborted:
                    raise OperationCancelledError() from e
                raise StreamTerminatedError(f"Stream terminated: {e!s}") from e
            if chunk is None:
                if self._aborted:
                    raise OperationCancelledError()
                return
            if chunk:
                yield chunk

    def _read_next(self, iterator: Iterator[bytes]) -> bytes | None:
        """Blocking read of one chunk, run in a worker thread."""
        with self._lock:
            if self._close_requested:
                return None
            self._reading = True
        try:
            return next(iterator, None)
        finally:
            with self._lock:
                self._reading = False
                release = self._close_requested
            if release:
                self._release()

    async def read(self) -> bytes:
        """Read the whole remaining body."""
        try:
            return await asyncio.to_thread(lambda: self._response.content)
        except requests.RequestException as e:
            raise StreamTerminatedError(f"Stream terminated: {e!s}") from e

    async def json(self) -> Any:
        body = await self.read()
        try:
            return json.loads(body)
        except ValueError as e:
            raise TransportError(
                "Invalid JSON response from server",
                status_code=self.status_code,
                status_text=self.reason,
                code="invalid_response",
            ) from e

    def abort(self) -> None:
        """Cancellation hook: interrupt a pending read without waiting for it."""
        if self._aborted:
            return
        self._aborted = True
        logger.debug("Aborting in-flight response")
        try:
            self._response.raw.shutdown()
        except (ValueError, RuntimeError, OSError) as e:
            # Connection already released or never attached to a socket.
            logger.debug("Socket shutdown skipped: %s", e)
        self.close()

    def close(self) -> None:
        """Close the underlying response (idempotent).

        If a worker thread is still reading, the release is left to it.
        """
        with self._lock:
            if self._close_requested:
                return
            self._close_requested = True
            if self._reading:
                return
        self._release()

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._response.close()


class _PendingSend:
    """Hands a response to whichever side finishes last: the worker or a canceller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._response: requests.Response | None = None

    def deliver(self, response: requests.Response) -> requests.Response:
        with self._lock:
            if not self._abandoned:
                self._response = response
                return response
        logger.debug("Closing response that arrived after its request was cancelled")
        response.close()
        return response

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            response, self._response = self._response, None
        if response is not None:
            response.close()


class RequestsTransport:
    """Transport over a ``requests.Session`` with stateless bearer auth."""

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_BASE_URL,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        timeout: float = 300,
    ):
        """
        Initialize the transport.

        Args:
            base_url: Base URL that request paths are joined to
            user_agent: User agent sent with every request
            headers: Extra headers merged over the defaults
            timeout: Connect/read timeout in seconds for each blocking call
        """
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self._extra_headers = headers or {}
        self._session = self._new_session()

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(DEFAULT_HEADERS)
        session.headers["User-Agent"] = self.user_agent
        session.headers.update(self._extra_headers)
        return session

    async def perform(self, request: TransportRequest) -> RequestsStreamingResponse:
        pending = _PendingSend()
        try:
            response = await asyncio.to_thread(lambda: pending.deliver(self._send(request)))
        except asyncio.CancelledError:
            # The worker still completes the request; its response is closed on arrival.
            pending.abandon()
            raise
        return RequestsStreamingResponse(response)

    def _send(self, request: TransportRequest) -> requests.Response:
        url = f"{self.base_url}{request.path}"
        logger.debug("%s %s", request.method, url)
        try:
            return self._session.request(
                request.method,
                url,
                json=request.json,
                headers=request.headers,
                cookies=request.cookies,
                stream=request.stream,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TimeoutError(
                f"Request to {url} timed out after {self.timeout}s", timeout=self.timeout
            ) from e
        except requests.RequestException as e:
            raise TransportError(f"Network error: {e!s}", code="network_error") from e

    async def refresh_session(self) -> None:
        """Replace the HTTP session, dropping pooled connections and cookies."""
        old, self._session = self._session, self._new_session()
        old.close()
        logger.debug("Transport session refreshed")

    async def close(self) -> None:
        self._session.close()
