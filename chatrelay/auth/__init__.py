"""Authentication: auth providers and session credential storage."""

from .credentials import CredentialManager
from .session import AuthProvider, SessionTokenAuthProvider

__all__ = ["AuthProvider", "CredentialManager", "SessionTokenAuthProvider"]
