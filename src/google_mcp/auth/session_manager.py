"""OAuth session lifecycle for google-mcp.

The SessionManager owns the in-memory session: it loads the client identity
and persisted tokens, refreshes expired access silently, runs the interactive
browser consent flow on request, and signs out.

Resuming and prompting are separate on purpose: ``initialize()`` only ever
refreshes, and only ``authenticate()`` opens a browser. Public methods never
raise; they return a bool or None and log the reason.
"""

import asyncio
import functools
import logging
import os
import time
import webbrowser
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from google_mcp.auth.callback_listener import DEFAULT_CALLBACK_TIMEOUT, CallbackListener
from google_mcp.auth.credential_store import CredentialStore
from google_mcp.auth.models import (
    GOOGLE_TOKEN_URI,
    ApplicationIdentity,
    CallbackOutcome,
    LoadStatus,
    SessionPhase,
    SessionState,
)

logger = logging.getLogger(__name__)

# Scopes requested for every session
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/tasks",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/contacts",
    "https://www.googleapis.com/auth/youtube",
    "https://www.googleapis.com/auth/presentations",
]

GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"
CREDENTIALS_CONSOLE_URL = "https://console.cloud.google.com/apis/credentials"

# Tokens this close to expiry are refreshed before being handed out
EXPIRY_SKEW_MS = 60_000

RELAX_TOKEN_SCOPE_ENV = "OAUTHLIB_RELAX_TOKEN_SCOPE"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _fetch_token(flow: Flow, code: str) -> None:
    # Google lets the user grant a subset of the requested scopes; oauthlib
    # rejects such a token response unless this is set.
    os.environ[RELAX_TOKEN_SCOPE_ENV] = "1"
    flow.fetch_token(code=code)


def _granted_scopes(token: object) -> list[str] | None:
    """Scopes listed in a token response, or None if it lists none."""
    scope = token.get("scope") if isinstance(token, dict) else None
    if isinstance(scope, str):
        return scope.split() or None
    if isinstance(scope, (list, tuple)):
        return [str(s) for s in scope] or None
    return None


class SessionManager:
    """Delegated-access session for Google APIs.

    One instance per process, owned by the server and shared by every tool
    handler.

    Attributes:
        store: Credential store for identity and token files.
        scopes: Scopes requested during consent.
        callback_timeout: Seconds the consent flow waits for the redirect.

    Example:
        ```python
        session = SessionManager()

        if not await session.initialize():
            # No usable session; ask the user
            await session.authenticate()

        token = await session.get_access_token()
        ```
    """

    def __init__(
        self,
        store: CredentialStore | None = None,
        scopes: list[str] | None = None,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        open_browser: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        """Initialize the session manager.

        Args:
            store: Credential store. Creates one for the platform paths if not provided.
            scopes: Scopes to request. Uses GOOGLE_SCOPES if not specified.
            callback_timeout: Seconds to wait for the OAuth redirect.
            open_browser: Function opening a URL in the user's browser.
        """
        self.store = store or CredentialStore()
        self.scopes = list(scopes or GOOGLE_SCOPES)
        self.callback_timeout = callback_timeout
        self._open_browser = open_browser

        self._phase = SessionPhase.UNINITIALIZED
        self._identity: ApplicationIdentity | None = None
        self._session: SessionState | None = None
        self._identity_status: LoadStatus | None = None
        self._session_status: LoadStatus | None = None
        self._flow_task: asyncio.Task[bool] | None = None
        self._refresh_lock = asyncio.Lock()
        self.last_flow_outcome: CallbackOutcome | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def identity_status(self) -> LoadStatus | None:
        """Status of credentials.json at the last load, None before any load."""
        return self._identity_status

    @property
    def session_status(self) -> LoadStatus | None:
        """Status of tokens.json at the last load, None before any load."""
        return self._session_status

    @property
    def flow_in_progress(self) -> bool:
        return self._flow_task is not None and not self._flow_task.done()

    @property
    def credentials_path(self) -> Path:
        return self.store.credentials_path

    @property
    def token_path(self) -> Path:
        return self.store.token_path

    def is_ready(self) -> bool:
        """True iff a session validated in this process is held in memory."""
        return self._session is not None and self._phase == SessionPhase.SESSION_ACTIVE

    def setup_instructions(self) -> str:
        """Human-readable instructions for provisioning credentials.json."""
        return (
            f"Please place your Google OAuth credentials at: {self.credentials_path}\n\n"
            f"You can download credentials from: {CREDENTIALS_CONSOLE_URL}\n\n"
            "1. Create a new OAuth 2.0 Client ID\n"
            "2. Download the JSON file\n"
            "3. Save it as 'credentials.json' at the path above"
        )

    def get_auth_url(self) -> str | None:
        """Build the consent URL without opening a browser.

        Returns:
            Authorization URL, or None if no client identity is loaded.
        """
        if self._identity is None:
            return None
        return self._authorization_url(self._identity)

    def get_credentials(self) -> Credentials | None:
        """Get google-auth credentials for client libraries.

        Returns:
            Credentials for the active session, or None if not ready.
        """
        if not self.is_ready() or self._session is None or self._identity is None:
            return None
        return self._state_to_credentials(self._session, self._identity)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Resume a persisted session without user interaction.

        Loads the client identity and any stored tokens, refreshing them once
        if they have expired. Never opens a browser.

        Returns:
            True if a usable session is now active.
        """
        if not self._load_identity():
            self._clear_session()
            self._phase = SessionPhase.IDENTITY_MISSING
            logger.warning(
                "No usable OAuth credentials found. Place them at: %s", self.credentials_path
            )
            return False

        self._phase = SessionPhase.IDENTITY_LOADED
        result = self.store.load_session_state()
        self._session_status = result.status
        if result.value is None:
            self._clear_session()
            return False

        state = result.value
        if state.is_expired():
            self._session = None
            self._phase = SessionPhase.SESSION_EXPIRED
            logger.info("Access token expired, attempting refresh...")
            refreshed = await self._refresh(state)
            if refreshed is None:
                self._clear_session()
                return False
            state = refreshed

        self._activate(state)
        return True

    async def authenticate(self) -> bool:
        """Run the interactive browser consent flow if no session is usable.

        Only one flow runs at a time; concurrent callers wait for the flow
        already in progress instead of starting another.

        Returns:
            True if a session is active when the flow ends.
        """
        if self.flow_in_progress:
            logger.info("Authentication already in progress, waiting for it")
            return await self._await_flow()

        if self.is_ready():
            return True
        if await self.initialize():
            return True
        if self._identity is None:
            return False

        if not self.flow_in_progress:
            self._flow_task = asyncio.ensure_future(self._run_consent_flow(self._identity))
        return await self._await_flow()

    async def set_auth_code(self, code: str) -> bool:
        """Exchange a manually supplied authorization code.

        Fallback for environments where the redirect cannot reach the local
        listener. Nothing is written unless the exchange succeeds.

        Args:
            code: Authorization code copied from the redirect URL.

        Returns:
            True if the code was exchanged and the session persisted.
        """
        code = (code or "").strip()
        if not code:
            logger.warning("Empty authorization code supplied")
            return False

        if self._identity is None and not self._load_identity():
            self._phase = SessionPhase.IDENTITY_MISSING
            return False

        return await self._exchange_code(code)

    async def get_access_token(self) -> str | None:
        """Get a usable access token, refreshing it once if it is about to expire.

        Returns:
            Access token string, or None if no session is active or refresh failed.
        """
        if not self.is_ready() or self._session is None:
            return None

        if self._session.is_expired(now_ms=_now_ms() + EXPIRY_SKEW_MS):
            logger.info("Access token expired, attempting refresh...")
            refreshed = await self._refresh(self._session)
            if refreshed is None:
                self._clear_session()
                return None
            self._activate(refreshed)

        return self._session.access_token

    async def logout(self) -> None:
        """Sign out: delete the stored session, forget it, revoke it remotely.

        Revocation is best-effort; local state is cleared even if it fails.
        """
        state = self._session
        if state is None:
            state = self.store.load_session_state().value

        self.store.delete_session_state()
        self._clear_session()
        if self._identity is None:
            self._phase = SessionPhase.UNINITIALIZED

        if state is not None:
            await self._revoke(state.refresh_token or state.access_token)
        logger.info("Signed out of Google")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_identity(self) -> bool:
        result = self.store.load_application_identity()
        self._identity_status = result.status
        self._identity = result.value
        return self._identity is not None

    def _activate(self, state: SessionState) -> None:
        self._session = state
        self._session_status = LoadStatus.FOUND
        self._phase = SessionPhase.SESSION_ACTIVE

    def _clear_session(self) -> None:
        self._session = None
        if self._identity is not None:
            self._phase = SessionPhase.NO_SESSION

    async def _await_flow(self) -> bool:
        if self._flow_task is None:
            return False
        return await asyncio.shield(self._flow_task)

    def _build_flow(self, identity: ApplicationIdentity) -> Flow:
        # The URL and the code exchange may come from different Flow objects
        # (manual code entry), so PKCE is not used.
        return Flow.from_client_config(
            identity.to_client_config(),
            scopes=self.scopes,
            redirect_uri=identity.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _authorization_url(self, identity: ApplicationIdentity) -> str:
        auth_url, _ = self._build_flow(identity).authorization_url(
            access_type="offline",
            prompt="consent",
        )
        return auth_url

    async def _run_consent_flow(self, identity: ApplicationIdentity) -> bool:
        """Open the browser and wait for the redirect on a local listener."""
        listener = CallbackListener(
            host=identity.callback_host,
            port=identity.callback_port,
            path=identity.callback_path,
            on_code=self._exchange_code,
            timeout=self.callback_timeout,
        )

        try:
            auth_url = self._authorization_url(identity)
            async with listener:
                logger.info("Opening browser for Google authorization...")
                logger.info("If the browser doesn't open, visit: %s", auth_url)
                self._launch_browser(auth_url)
                outcome = await listener.wait()
        except OSError as e:
            logger.error(
                "Could not start OAuth callback listener on %s:%d: %s",
                identity.callback_host,
                identity.callback_port,
                e,
            )
            outcome = CallbackOutcome.ERROR
        except Exception:
            logger.exception("OAuth consent flow failed")
            outcome = CallbackOutcome.ERROR

        self.last_flow_outcome = outcome
        if outcome == CallbackOutcome.AUTHORIZED:
            logger.info("Google authentication successful")
            return True

        logger.warning("Google authentication did not complete: %s", outcome.value)
        return False

    def _launch_browser(self, url: str) -> None:
        try:
            if not self._open_browser(url):
                logger.warning("Could not open a browser automatically")
        except Exception as e:
            logger.warning("Could not open a browser automatically: %s", e)

    async def _exchange_code(self, code: str) -> bool:
        """Exchange an authorization code and persist the resulting session."""
        identity = self._identity
        if identity is None:
            return False

        flow = self._build_flow(identity)
        loop = asyncio.get_running_loop()
        try:
            # fetch_token is blocking (requests)
            await loop.run_in_executor(None, functools.partial(_fetch_token, flow, code))
            state = self._credentials_to_state(
                flow.credentials, granted_scopes=_granted_scopes(flow.oauth2session.token)
            )
            self.store.save_session_state(state)
        except Exception as e:
            logger.error("Error exchanging authorization code: %s", e)
            return False

        self._activate(state)
        return True

    async def _refresh(self, state: SessionState) -> SessionState | None:
        """Refresh an expired session and persist it.

        Concurrent callers share one refresh: whoever waited on the lock
        gets the session the first caller stored.

        Returns:
            The refreshed session, or None if it could not be refreshed.
        """
        identity = self._identity
        if identity is None:
            return None
        if not state.refresh_token:
            logger.warning("Session expired and no refresh token is stored")
            return None

        async with self._refresh_lock:
            current = self._session
            if (
                current is not None
                and current is not state
                and not current.is_expired(now_ms=_now_ms() + EXPIRY_SKEW_MS)
            ):
                return current

            credentials = self._state_to_credentials(state, identity)
            loop = asyncio.get_running_loop()
            try:
                # Run refresh in executor (blocking)
                await loop.run_in_executor(None, credentials.refresh, Request())
                refreshed = self._credentials_to_state(credentials, previous=state)
                self.store.save_session_state(refreshed)
            except Exception as e:
                logger.error("Error refreshing token: %s", e)
                return None

        logger.info("Access token refreshed")
        return refreshed

    async def _revoke(self, token: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(GOOGLE_REVOKE_URI, data={"token": token})
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Token revocation failed (local session cleared anyway): %s", e)

    def _credentials_to_state(
        self,
        credentials: Credentials,
        previous: SessionState | None = None,
        granted_scopes: list[str] | None = None,
    ) -> SessionState:
        """Convert google-auth Credentials to SessionState.

        Args:
            credentials: Google OAuth2 credentials.
            previous: Session being refreshed, used for fields the refresh
                response omits.
            granted_scopes: Scopes the token response reports as granted.

        Returns:
            SessionState with all credential data.
        """
        expiry_date = None
        if credentials.expiry:
            expiry = credentials.expiry
            # google-auth uses naive UTC datetimes
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            expiry_date = int(expiry.timestamp() * 1000)

        refresh_token = credentials.refresh_token
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token

        scopes = (
            granted_scopes
            or credentials.scopes
            or (previous.scopes if previous else None)
            or self.scopes
        )

        return SessionState(  # nosec B106 - "Bearer" is OAuth token type, not a password
            access_token=credentials.token,
            refresh_token=refresh_token,
            expiry_date=expiry_date,
            token_type="Bearer",
            scope=" ".join(scopes),
        )

    def _state_to_credentials(
        self, state: SessionState, identity: ApplicationIdentity
    ) -> Credentials:
        """Convert SessionState to google-auth Credentials.

        Args:
            state: Session to convert.
            identity: Client identity, needed to refresh.

        Returns:
            Google OAuth2 credentials.
        """
        expiry = None
        if state.expiry_date is not None:
            expiry = datetime.fromtimestamp(state.expiry_date / 1000, tz=timezone.utc).replace(
                tzinfo=None
            )

        return Credentials(  # nosec B106 - token_uri is public Google OAuth endpoint
            token=state.access_token,
            refresh_token=state.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=identity.client_id,
            client_secret=identity.client_secret,
            scopes=state.scopes or None,
            expiry=expiry,
        )
