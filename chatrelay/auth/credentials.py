"""
Secure storage for long-lived session artifacts using the OS keychain.

The session token is stored through ``keyring``:
- macOS: Keychain Access
- Windows: Credential Manager
- Linux: libsecret/KWallet
- Fallback: plain JSON file (0600) when no usable keyring backend exists

Non-secret artifacts (clearance token, user agent, email) live in the
per-profile JSON config file.
"""

# mypy: disable-error-code="no-any-return"
import json
import logging
import os
from pathlib import Path
import string
import time
import warnings

import keyring
from keyring.backends import fail
import keyring.errors

from .._types import SessionArtifacts

logger = logging.getLogger(__name__)


def keyring_usable() -> bool:
    """True when keyring resolved to a real backend rather than the fail backend."""
    try:
        return not isinstance(keyring.get_keyring(), fail.Keyring)
    except Exception as e:
        logger.debug("Keyring backend lookup failed: %s", e)
        return False


class CredentialManager:
    """Per-profile storage for the session token and its companion artifacts."""

    SERVICE_NAME = "chatrelay"
    DEFAULT_PROFILE = "default"

    CONFIG_DIR = Path.home() / ".chatrelay"
    CONFIG_FILE = CONFIG_DIR / "config.json"

    def __init__(self, profile: str = DEFAULT_PROFILE):
        """
        Initialize credential manager.

        Args:
            profile: Profile name for multi-account support (default: "default")
        """
        self.profile = profile

    def _ensure_config_dir(self) -> None:
        """Ensure config directory exists with proper permissions."""
        self.CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        # Managed filesystems may refuse the chmod; storage still works without it.
        try:
            os.chmod(self.CONFIG_DIR, 0o700)
        except PermissionError:
            return

    @property
    def _keyring_username(self) -> str:
        return f"{self.profile}_session_token"

    def save_session_token(self, session_token: str) -> bool:
        """
        Save the session token, preferring the OS keychain.

        Returns:
            True if saved successfully, False otherwise
        """
        if not session_token:
            return False

        if self.is_keyring_available:
            result = self._retry_keychain_operation(
                lambda: keyring.set_password(
                    self.SERVICE_NAME, self._keyring_username, session_token
                )
            )
            return bool(result)

        config = self._load_config()
        self._profile_section(config)["session_token"] = session_token
        return self._save_config(config)

    def get_session_token(self) -> str | None:
        """
        Get the stored session token.

        Returns:
            Session token if found and well-formed, None otherwise
        """
        if self.is_keyring_available:
            token = self._retry_keychain_operation(
                lambda: keyring.get_password(self.SERVICE_NAME, self._keyring_username),
                return_value=True,
            )
        else:
            token = self.get_profile_info().get("session_token")

        if token and not self._is_valid_token(str(token)):
            warnings.warn(
                "Stored session token has invalid format and was discarded. "
                "Store a fresh one with CredentialManager.save_session_token().",
                UserWarning,
                stacklevel=2,
            )
            self.delete_session_token()
            return None

        return str(token) if token else None

    def delete_session_token(self) -> bool:
        """
        Delete the stored session token.

        Returns:
            True if deleted (or never stored), False otherwise
        """
        if self.is_keyring_available:
            result = self._retry_keychain_operation(
                lambda: keyring.delete_password(self.SERVICE_NAME, self._keyring_username),
                ignore_password_delete_error=True,
            )
            return bool(result)

        config = self._load_config()
        profile_config = config["profiles"].get(self.profile, {})
        if "session_token" in profile_config:
            profile_config.pop("session_token")
            return self._save_config(config)
        return True

    def save_session_artifacts(self, artifacts: SessionArtifacts) -> bool:
        """
        Persist session artifacts for this profile.

        The session token goes to the keychain; the rest to the config file.
        """
        success = True
        if artifacts.session_token:
            success = self.save_session_token(artifacts.session_token)

        config = self._load_config()
        profile_config = self._profile_section(config)
        if artifacts.clearance_token:
            profile_config["clearance_token"] = artifacts.clearance_token
        if artifacts.user_agent:
            profile_config["user_agent"] = artifacts.user_agent
        return self._save_config(config) and success

    def get_session_artifacts(self) -> SessionArtifacts:
        """Load whatever artifacts are stored for this profile."""
        profile_config = self.get_profile_info()
        return SessionArtifacts(
            session_token=self.get_session_token(),
            clearance_token=profile_config.get("clearance_token"),
            user_agent=profile_config.get("user_agent"),
        )

    def save_profile_info(self, email: str | None = None) -> bool:
        """Save non-sensitive profile information to the config file."""
        config = self._load_config()
        if email:
            self._profile_section(config)["email"] = email
        return self._save_config(config)

    def get_profile_info(self) -> dict:
        """Get the raw profile section of the config file."""
        return self._load_config()["profiles"].get(self.profile, {})

    def clear_profile(self) -> bool:
        """
        Clear all profile data (token from keychain, config from file).

        Returns:
            True if cleared successfully
        """
        success = self.delete_session_token()

        config = self._load_config()
        if self.profile in config["profiles"]:
            del config["profiles"][self.profile]
            if not config["profiles"]:
                if self.CONFIG_FILE.exists():
                    self.CONFIG_FILE.unlink()
            elif not self._save_config(config):
                success = False

        return success

    def _profile_section(self, config: dict) -> dict:
        return config["profiles"].setdefault(self.profile, {})

    def _load_config(self) -> dict:
        """Load configuration with profiles structure from file."""
        if not self.CONFIG_FILE.exists():
            return {"profiles": {}}

        try:
            with open(self.CONFIG_FILE) as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", self.CONFIG_FILE, e)
            return {"profiles": {}}

        if not isinstance(config, dict):
            return {"profiles": {}}
        config.setdefault("profiles", {})
        return config

    def _save_config(self, config: dict) -> bool:
        """Save configuration with profiles structure to file."""
        try:
            self._ensure_config_dir()
            with open(self.CONFIG_FILE, "w") as f:
                json.dump(config, f, indent=2)
            os.chmod(self.CONFIG_FILE, 0o600)
            return True
        except OSError as e:
            warnings.warn(f"Failed to save config: {e}", UserWarning, stacklevel=2)
            return False

    def _is_valid_token(self, token: str) -> bool:
        """
        Reject obviously corrupted tokens.

        Session tokens are opaque (often JWE with dot-delimited segments), so
        only sentinels, whitespace and serialized structures are refused.
        """
        token = token.strip()
        if not token or token.lower() in {"none", "null"}:
            return False
        if any(char.isspace() for char in token):
            return False
        if token.startswith("{") and token.endswith("}"):
            return False

        allowed_chars = set(string.ascii_letters + string.digits + "-_.~+/=:")
        return all(char in allowed_chars for char in token)

    def _retry_keychain_operation(
        self,
        operation: object,
        max_retries: int = 3,
        return_value: bool = False,
        ignore_password_delete_error: bool = False,
    ) -> object:
        """
        Retry keychain operations to handle transient failures.

        Args:
            operation: Function to execute
            max_retries: Maximum number of retry attempts
            return_value: Whether to return the operation result
            ignore_password_delete_error: Whether to treat a missing entry on delete as success

        Returns:
            Operation result if return_value=True, otherwise success boolean
        """
        for attempt in range(max_retries):
            try:
                result = operation()  # type: ignore[operator]
                return result if return_value else True
            except keyring.errors.PasswordDeleteError:
                if ignore_password_delete_error:
                    return True
                raise
            except keyring.errors.KeyringError as e:
                logger.debug(
                    "Keychain operation failed (attempt %d/%d): %s", attempt + 1, max_retries, e
                )
                if attempt < max_retries - 1:
                    time.sleep(0.1 * (2**attempt))

        if return_value:
            return None
        return False

    @property
    def is_keyring_available(self) -> bool:
        """Check if keyring is available for secure storage."""
        return keyring_usable()
