"""
Root pytest configuration and fixtures for chatrelay.

Provides common fixtures and test utilities for the test suite.
"""

import os
from pathlib import Path
import sys
from unittest.mock import patch

import pytest
import responses

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def clean_environment():
    """Clean environment variables before each test."""
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("CHATRELAY_"):
            del os.environ[key]

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def isolated_credentials(tmp_path):
    """Keep credential storage inside tmp_path and off the real keychain."""
    from chatrelay.auth.credentials import CredentialManager

    config_dir = tmp_path / ".chatrelay"
    with (
        patch.object(CredentialManager, "CONFIG_DIR", config_dir),
        patch.object(CredentialManager, "CONFIG_FILE", config_dir / "config.json"),
        patch("chatrelay.auth.credentials.keyring_usable", return_value=False),
    ):
        yield config_dir


@pytest.fixture
def mock_requests():
    """Mock HTTP requests using responses library."""
    with responses.RequestsMock() as rsps:
        yield rsps


@pytest.fixture
def api_base_url():
    return "https://chat.test.example/api"


@pytest.fixture
def backend_base_url():
    return "https://chat.test.example/backend-api"
