"""Shared pytest fixtures for google-mcp tests.

This module provides reusable fixtures for storage locations, OAuth client
and session files, a local callback port, and Google OAuth mocks.
"""

import json
import socket
import time
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from google_mcp.auth.credential_store import CredentialStore
from google_mcp.auth.models import SessionState
from google_mcp.auth.paths import StoragePaths

TEST_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/drive",
]


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def storage_paths(tmp_path: Path) -> StoragePaths:
    """Storage locations inside a temporary directory (not yet created)."""
    return StoragePaths(config_dir=tmp_path / "config", data_dir=tmp_path / "data")


@pytest.fixture
def credential_store(storage_paths: StoragePaths) -> CredentialStore:
    """Create a CredentialStore with temporary storage."""
    return CredentialStore(paths=storage_paths)


# =============================================================================
# Callback Port
# =============================================================================


@pytest.fixture
def free_port() -> int:
    """Find a TCP port on the loopback interface that is currently free."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def redirect_uri(free_port: int) -> str:
    """Redirect URI pointing at the free callback port."""
    return f"http://127.0.0.1:{free_port}/oauth2callback"


# =============================================================================
# Identity and Session Files
# =============================================================================


@pytest.fixture
def client_secrets(redirect_uri: str) -> dict[str, Any]:
    """Desktop-app client secrets document as downloaded from Google."""
    return {
        "installed": {
            "client_id": "test-client-id.apps.googleusercontent.com",
            "client_secret": "test-client-secret",  # pragma: allowlist secret
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": [redirect_uri],
        }
    }


@pytest.fixture
def write_identity(storage_paths: StoragePaths) -> Callable[[Any], Path]:
    """Return a function writing credentials.json with the given content."""

    def _write(content: Any) -> Path:
        storage_paths.config_dir.mkdir(parents=True, exist_ok=True)
        path = storage_paths.credentials_path
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_text(json.dumps(content), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def identity_file(write_identity: Callable[[Any], Path], client_secrets: dict[str, Any]) -> Path:
    """Write a valid credentials.json and return its path."""
    return write_identity(client_secrets)


@pytest.fixture
def valid_session_state() -> SessionState:
    """Create a session whose access token is valid for an hour."""
    return SessionState(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expiry_date=_now_ms() + 3_600_000,
        token_type="Bearer",
        scope=" ".join(TEST_SCOPES),
    )


@pytest.fixture
def expired_session_state() -> SessionState:
    """Create a session that expired ten minutes ago."""
    return SessionState(
        access_token="expired_access_token",
        refresh_token="test_refresh_token",
        expiry_date=_now_ms() - 600_000,
        token_type="Bearer",
        scope=" ".join(TEST_SCOPES),
    )


# =============================================================================
# Mock Google Credentials
# =============================================================================


@pytest.fixture
def mock_google_credentials() -> MagicMock:
    """Create a mock Google OAuth2 Credentials object."""
    mock_creds = MagicMock()
    mock_creds.token = "mock_access_token"
    mock_creds.refresh_token = "mock_refresh_token"
    mock_creds.expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    mock_creds.expired = False
    mock_creds.valid = True
    mock_creds.scopes = list(TEST_SCOPES)
    return mock_creds


@pytest.fixture
def mock_flow(mock_google_credentials: MagicMock) -> Generator[MagicMock, None, None]:
    """Patch google_auth_oauthlib's Flow as used by the session manager.

    The returned flow builds a fixed consent URL and, once ``fetch_token``
    has been called, exposes ``mock_google_credentials``.
    """
    flow = MagicMock()
    flow.authorization_url.return_value = (
        "https://accounts.google.com/o/oauth2/auth?client_id=test&prompt=consent",
        "test_state",
    )
    flow.credentials = mock_google_credentials

    with patch("google_mcp.auth.session_manager.Flow") as mock_flow_class:
        mock_flow_class.from_client_config.return_value = flow
        yield flow


# =============================================================================
# Session Manager Fixtures
# =============================================================================


class FakeBrowser:
    """Records URLs instead of opening a browser."""

    def __init__(self) -> None:
        self.urls: list[str] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        return True


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def session_manager(credential_store: CredentialStore, browser: FakeBrowser):
    """Create a SessionManager with temporary storage and a fake browser."""
    from google_mcp.auth.session_manager import SessionManager

    return SessionManager(store=credential_store, callback_timeout=10.0, open_browser=browser)


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()


@pytest.fixture
def cli_env(storage_paths: StoragePaths) -> dict[str, str]:
    """Environment pointing google-mcp at temporary storage."""
    return {
        "GOOGLE_MCP_CONFIG_DIR": str(storage_paths.config_dir),
        "GOOGLE_MCP_DATA_DIR": str(storage_paths.data_dir),
    }
