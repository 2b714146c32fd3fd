"""OAuth session management for google-mcp.

This package loads the operator-provided OAuth client, persists the user's
tokens in platform-standard locations, refreshes them silently and runs the
browser consent flow when a new grant is needed.

Quick Start:
    ```python
    from google_mcp.auth import SessionManager

    session = SessionManager()

    if not await session.initialize():
        await session.authenticate()  # opens the browser

    token = await session.get_access_token()
    ```
"""

from google_mcp.auth.callback_listener import CallbackListener
from google_mcp.auth.credential_store import CredentialStore
from google_mcp.auth.models import (
    ApplicationIdentity,
    CallbackOutcome,
    LoadResult,
    LoadStatus,
    SessionPhase,
    SessionState,
)
from google_mcp.auth.paths import StoragePaths, resolve_config_dir, resolve_data_dir
from google_mcp.auth.session_manager import GOOGLE_SCOPES, SessionManager

__all__ = [
    "SessionManager",
    "CredentialStore",
    "CallbackListener",
    "StoragePaths",
    "resolve_config_dir",
    "resolve_data_dir",
    "ApplicationIdentity",
    "SessionState",
    "SessionPhase",
    "LoadResult",
    "LoadStatus",
    "CallbackOutcome",
    "GOOGLE_SCOPES",
]
