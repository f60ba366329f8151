"""Dataclass models for conversation turns, stream payloads and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any
import uuid

DONE_SENTINEL = "[DONE]"

ACTIONS = ("next", "variant")


def new_id() -> str:
    """Fresh random message identifier."""
    return str(uuid.uuid4())


@dataclass
class ConversationTurn:
    """One user message within a (possibly new) conversation."""

    content: str
    message_id: str = field(default_factory=new_id)
    parent_message_id: str = field(default_factory=new_id)
    conversation_id: str | None = None
    role: str = "user"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "role": self.role,
            "content": {"content_type": "text", "parts": [self.content]},
        }

    def to_request_body(self, *, action: str, model: str) -> dict[str, Any]:
        """Build the conversation request body for this turn."""
        body: dict[str, Any] = {
            "action": action,
            "messages": [self.to_message()],
            "model": model,
            "parent_message_id": self.parent_message_id,
        }
        if self.conversation_id:
            body["conversation_id"] = self.conversation_id
        return body


@dataclass(frozen=True)
class ExchangeSnapshot:
    """Latest known state of a send-message exchange.

    Each update replaces the whole snapshot; ``response`` is the full text so
    far, not a delta.
    """

    message_id: str
    response: str = ""
    conversation_id: str | None = None

    def merge(self, fragment: PayloadFragment) -> ExchangeSnapshot:
        """Return the snapshot that results from applying ``fragment``."""
        return ExchangeSnapshot(
            message_id=fragment.message_id or self.message_id,
            response=fragment.text if fragment.text else self.response,
            conversation_id=fragment.conversation_id or self.conversation_id,
        )


@dataclass(frozen=True)
class PayloadFragment:
    """The parts of one stream payload the exchange cares about."""

    conversation_id: str | None = None
    message_id: str | None = None
    text: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.text)


@dataclass(frozen=True)
class IgnoredPayload:
    """A payload that carries nothing usable; ``reason`` says why."""

    reason: str
    raw: str


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_payload(data: str) -> PayloadFragment | IgnoredPayload:
    """
    Interpret one event payload.

    Expected shape::

        {"conversation_id": "...", "message": {"id": "...", "content": {"parts": ["..."]}}}

    Every field is optional. Anything that is not a JSON object is ignored.
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        return IgnoredPayload(reason=f"invalid JSON: {e.msg}", raw=data)

    if not isinstance(payload, dict):
        return IgnoredPayload(reason=f"expected object, got {type(payload).__name__}", raw=data)

    message = payload.get("message")
    message_id = None
    text = None
    if isinstance(message, dict):
        message_id = _optional_str(message.get("id"))
        content = message.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if isinstance(parts, list) and parts:
            text = _optional_str(parts[0])

    return PayloadFragment(
        conversation_id=_optional_str(payload.get("conversation_id")),
        message_id=message_id,
        text=text,
    )


@dataclass
class SessionArtifacts:
    """Long-lived credentials that authorize minting new access tokens."""

    session_token: str | None = None
    clearance_token: str | None = None
    user_agent: str | None = None

    def cookies(self) -> dict[str, str]:
        cookies = {}
        if self.clearance_token:
            cookies["cf_clearance"] = self.clearance_token
        return cookies


@dataclass
class AuthInfo:
    """Result of a login: a bearer token plus the session artifacts behind it."""

    access_token: str
    artifacts: SessionArtifacts = field(default_factory=SessionArtifacts)
    user: dict | None = None

    @classmethod
    def from_session(cls, data: dict, artifacts: SessionArtifacts) -> AuthInfo:
        return cls(
            access_token=data["accessToken"],
            artifacts=artifacts,
            user=data.get("user"),
        )
