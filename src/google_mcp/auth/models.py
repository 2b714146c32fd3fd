"""Data models for the google-mcp OAuth session.

ApplicationIdentity is the operator-provisioned OAuth client, SessionState is
the token set google-mcp persists, and LoadResult tells callers whether a file
was found, missing or unreadable.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CALLBACK_HOST = "localhost"
DEFAULT_CALLBACK_PORT = 3000
DEFAULT_CALLBACK_PATH = "/oauth2callback"
DEFAULT_REDIRECT_URI = (
    f"http://{DEFAULT_CALLBACK_HOST}:{DEFAULT_CALLBACK_PORT}{DEFAULT_CALLBACK_PATH}"
)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

T = TypeVar("T")


class SessionPhase(str, Enum):
    """Lifecycle phase of the in-memory session."""

    UNINITIALIZED = "uninitialized"
    IDENTITY_MISSING = "identity_missing"
    IDENTITY_LOADED = "identity_loaded"
    NO_SESSION = "no_session"
    SESSION_EXPIRED = "session_expired"
    SESSION_ACTIVE = "session_active"


class LoadStatus(str, Enum):
    """Outcome of reading a persisted file."""

    FOUND = "found"
    MISSING = "missing"
    CORRUPT = "corrupt"


class CallbackOutcome(str, Enum):
    """How an interactive consent flow ended."""

    AUTHORIZED = "authorized"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    """Result of loading a file from the credential store.

    Attributes:
        status: Whether the file was found, missing or corrupt.
        value: Parsed model, only set when status is FOUND.
        error: Reason the file was rejected, only set when status is CORRUPT.
    """

    status: LoadStatus
    value: T | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.status == LoadStatus.FOUND

    @classmethod
    def of(cls, value: T) -> "LoadResult[T]":
        return cls(status=LoadStatus.FOUND, value=value)

    @classmethod
    def missing(cls) -> "LoadResult[T]":
        return cls(status=LoadStatus.MISSING)

    @classmethod
    def corrupt(cls, error: str) -> "LoadResult[T]":
        return cls(status=LoadStatus.CORRUPT, error=error)


class ApplicationIdentity(BaseModel):
    """OAuth client identity loaded from credentials.json.

    Attributes:
        client_id: OAuth client identifier.
        client_secret: OAuth client secret.
        redirect_uris: Declared redirect targets, first one wins.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1, description="OAuth client ID")
    client_secret: str = Field(..., min_length=1, description="OAuth client secret")
    redirect_uris: list[str] = Field(default_factory=list, description="Redirect targets")

    @classmethod
    def from_client_secrets(cls, data: Any) -> "ApplicationIdentity":
        """Normalize a Google client secrets document.

        Accepts either the ``installed`` (desktop app) or ``web`` shape.

        Raises:
            ValueError: If the document matches neither shape or is incomplete.
        """
        if not isinstance(data, dict):
            raise ValueError("client secrets must be a JSON object")

        section = data.get("installed") or data.get("web")
        if not isinstance(section, dict):
            raise ValueError("client secrets must contain an 'installed' or 'web' section")

        redirect_uris = section.get("redirect_uris") or []
        if not isinstance(redirect_uris, list):
            raise ValueError("redirect_uris must be a list")

        return cls.model_validate(
            {
                "client_id": section.get("client_id") or "",
                "client_secret": section.get("client_secret") or "",
                "redirect_uris": [uri for uri in redirect_uris if uri],
            }
        )

    @property
    def redirect_uri(self) -> str:
        """Effective redirect target.

        Loopback targets declared without a port (Google's desktop default is
        ``http://localhost``) get the default callback port.
        """
        if not self.redirect_uris:
            return DEFAULT_REDIRECT_URI

        uri = self.redirect_uris[0]
        parsed = urlparse(uri)
        if parsed.hostname in _LOOPBACK_HOSTS and parsed.port is None:
            netloc = f"{parsed.netloc}:{DEFAULT_CALLBACK_PORT}"
            return urlunparse(parsed._replace(netloc=netloc))
        return uri

    @property
    def callback_host(self) -> str:
        """Interface the callback listener binds.

        Always the local loopback; only the port and path come from the
        redirect target.
        """
        return DEFAULT_CALLBACK_HOST

    @property
    def callback_port(self) -> int:
        return urlparse(self.redirect_uri).port or DEFAULT_CALLBACK_PORT

    @property
    def callback_path(self) -> str:
        return urlparse(self.redirect_uri).path or "/"

    def to_client_config(self) -> dict[str, Any]:
        """Client config in the shape google_auth_oauthlib expects."""
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }


class SessionState(BaseModel):
    """Persisted OAuth token set.

    Field names match Google's token endpoint response so tokens.json stays
    readable by other Google tooling.

    Attributes:
        access_token: Short-lived bearer token.
        refresh_token: Long-lived refresh credential, if one was issued.
        expiry_date: Expiry instant in epoch milliseconds.
        token_type: Token type (always Bearer for Google).
        scope: Space separated granted scopes.
        id_token: OpenID token, if returned.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1, description="Access token")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    expiry_date: int | None = Field(default=None, description="Expiry in epoch ms")
    token_type: str = Field(default="Bearer", description="Token type")
    scope: str = Field(default="", description="Space separated granted scopes")
    id_token: str | None = Field(default=None, description="OpenID Connect ID token")

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()

    def is_expired(self, now_ms: int | None = None) -> bool:
        """Check whether the access token expiry is in the past.

        A session without an expiry instant is never considered expired.

        Args:
            now_ms: Current time in epoch milliseconds. Defaults to the clock.
        """
        if self.expiry_date is None:
            return False
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return self.expiry_date < now_ms
