"""Auth providers: mint access tokens from long-lived session artifacts."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Protocol

import requests

from .._exceptions import AuthenticationError, SessionExpiredError, TimeoutError, TransportError
from .._types import AuthInfo, SessionArtifacts
from ..transport import DEFAULT_HEADERS, DEFAULT_USER_AGENT
from .credentials import CredentialManager

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://chat.openai.com/api"
SESSION_TOKEN_COOKIE = "__Secure-next-auth.session-token"
CLEARANCE_COOKIE = "cf_clearance"
SESSION_EXPIRED_ERROR = "RefreshAccessTokenError"


class AuthProvider(Protocol):
    """Produces a bearer token plus the session artifacts behind it."""

    async def login(self) -> AuthInfo: ...


class SessionTokenAuthProvider:
    """
    Exchanges a session token for a short-lived access token.

    Tokens are resolved from the constructor arguments, then the
    ``CHATRELAY_*`` environment variables, then the profile's stored
    credentials. Everything the provider needs is passed in here; it holds
    no process-wide state.
    """

    def __init__(
        self,
        session_token: str | None = None,
        clearance_token: str | None = None,
        *,
        base_url: str | None = None,
        user_agent: str | None = None,
        profile: str = CredentialManager.DEFAULT_PROFILE,
        credentials: CredentialManager | None = None,
        timeout: float = 30,
        persist: bool = True,
    ):
        self.credentials = credentials or CredentialManager(profile=profile)

        session_token = session_token or os.environ.get("CHATRELAY_SESSION_TOKEN")
        stored = SessionArtifacts()
        if not session_token:
            # Only fall back to the profile store when nothing was configured.
            stored = self.credentials.get_session_artifacts()
            session_token = stored.session_token
        if not session_token:
            raise AuthenticationError.no_session_token()

        self.artifacts = SessionArtifacts(
            session_token=session_token,
            clearance_token=clearance_token
            or os.environ.get("CHATRELAY_CLEARANCE_TOKEN")
            or stored.clearance_token,
            user_agent=user_agent
            or os.environ.get("CHATRELAY_USER_AGENT")
            or stored.user_agent
            or DEFAULT_USER_AGENT,
        )
        self.base_url = (
            base_url or os.environ.get("CHATRELAY_API_BASE_URL") or DEFAULT_API_BASE_URL
        ).rstrip("/")
        self.timeout = timeout
        self.persist = persist

    async def login(self) -> AuthInfo:
        return await asyncio.to_thread(self._fetch_session)

    def _cookies(self) -> dict[str, str]:
        cookies = {SESSION_TOKEN_COOKIE: self.artifacts.session_token or ""}
        if self.artifacts.clearance_token:
            cookies[CLEARANCE_COOKIE] = self.artifacts.clearance_token
        return cookies

    def _fetch_session(self) -> AuthInfo:
        url = f"{self.base_url}/auth/session"
        headers = {
            **DEFAULT_HEADERS,
            "User-Agent": self.artifacts.user_agent or DEFAULT_USER_AGENT,
            "Accept": "*/*",
        }
        logger.debug("GET %s", url)
        try:
            response = requests.get(
                url, headers=headers, cookies=self._cookies(), timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TimeoutError(
                f"Request to {url} timed out after {self.timeout}s", timeout=self.timeout
            ) from e
        except requests.RequestException as e:
            raise TransportError(f"Network error: {e!s}", code="network_error") from e

        status, reason = response.status_code, response.reason
        if not response.ok:
            raise AuthenticationError(
                f"Failed to refresh access token: {status} {reason}",
                status_code=status,
                status_text=reason,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(
                "Failed to refresh access token: invalid JSON from session endpoint",
                status_code=status,
                status_text=reason,
                code="invalid_response",
            ) from e

        if not isinstance(data, dict) or not data.get("accessToken"):
            raise AuthenticationError("Unauthorized", status_code=status, status_text=reason)

        app_error = data.get("error")
        if app_error == SESSION_EXPIRED_ERROR:
            raise SessionExpiredError(
                "Session token may have expired",
                status_code=status,
                status_text=reason,
                code="session_expired",
            )
        if app_error:
            raise AuthenticationError(str(app_error), status_code=status, status_text=reason)

        rotated = response.cookies.get(SESSION_TOKEN_COOKIE)
        if rotated and rotated != self.artifacts.session_token:
            logger.info("Session token rotated by server")
            self.artifacts.session_token = rotated
            if self.persist:
                self.credentials.save_session_artifacts(self.artifacts)

        info = AuthInfo.from_session(data, self.artifacts)
        email = info.user.get("email") if isinstance(info.user, dict) else None
        if self.persist and email:
            self.credentials.save_profile_info(email=email)
        return info
