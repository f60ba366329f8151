"""Scripted collaborators for chatrelay tests."""

import asyncio
import json
from typing import Any

from chatrelay._exceptions import OperationCancelledError, TransportError
from chatrelay._types import AuthInfo, SessionArtifacts


def sse_frame(data: dict | str, **fields: str) -> str:
    """Build one SSE frame: optional fields, a data line and the blank separator."""
    payload = data if isinstance(data, str) else json.dumps(data)
    lines = [f"{name}: {value}" for name, value in fields.items()]
    lines.append(f"data: {payload}")
    return "\n".join(lines) + "\n\n"


def message_payload(
    text: str, message_id: str = "msg_reply", conversation_id: str = "conv_1"
) -> dict[str, Any]:
    """Payload shaped like one update of the conversation stream."""
    return {
        "conversation_id": conversation_id,
        "message": {
            "id": message_id,
            "role": "assistant",
            "content": {"content_type": "text", "parts": [text]},
        },
    }


class ScriptedResponse:
    """Streaming response that replays a fixed list of chunks."""

    def __init__(
        self,
        status_code: int = 200,
        chunks: list[str | bytes] | None = None,
        *,
        reason: str | None = None,
        body: Any = None,
        error: Exception | None = None,
        hang: bool = False,
    ):
        """
        Args:
            status_code: Status reported before the body is read
            chunks: Body chunks, yielded in order
            reason: Status text
            body: JSON body returned by ``json()``
            error: Raised after all chunks have been yielded
            hang: After the chunks, block until ``abort()`` is called
        """
        self.status_code = status_code
        self.reason = reason
        self.chunks = chunks or []
        self.body = body
        self.error = error
        self.hang = hang
        self.abort_calls = 0
        self.closed = False
        self._aborted = asyncio.Event()

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    async def iter_chunks(self):
        for chunk in self.chunks:
            if self._aborted.is_set():
                raise OperationCancelledError()
            yield chunk.encode() if isinstance(chunk, str) else chunk
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.hang:
            await self._aborted.wait()
            raise OperationCancelledError()

    async def read(self) -> bytes:
        return json.dumps(self.body).encode() if self.body is not None else b""

    async def json(self) -> Any:
        if self.body is None:
            raise TransportError("Invalid JSON response from server", code="invalid_response")
        return self.body

    def abort(self) -> None:
        self.abort_calls += 1
        self._aborted.set()

    def close(self) -> None:
        self.closed = True


class ScriptedTransport:
    """Transport that hands out pre-built responses in order and records requests."""

    def __init__(self, responses: list[ScriptedResponse]):
        self.responses = list(responses)
        self.requests = []
        self.refresh_calls = 0
        self.closed = False

    async def perform(self, request):
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("ScriptedTransport ran out of responses")
        return self.responses.pop(0)

    async def refresh_session(self) -> None:
        self.refresh_calls += 1

    async def close(self) -> None:
        self.closed = True


class FakeAuthProvider:
    """Auth provider that mints ``token-1``, ``token-2``, ... or raises scripted errors."""

    def __init__(self, errors: list[Exception] | None = None, user: dict | None = None):
        self.login_calls = 0
        self.errors = list(errors or [])
        self.user = user

    async def login(self) -> AuthInfo:
        self.login_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return AuthInfo(
            access_token=f"token-{self.login_calls}",
            artifacts=SessionArtifacts(session_token="session", clearance_token="clearance"),
            user=self.user,
        )
