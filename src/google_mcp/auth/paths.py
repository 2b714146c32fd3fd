"""Platform-aware storage locations for google-mcp.

Two files live outside the project tree:

- ``credentials.json``: the OAuth client identity, provisioned by the
  operator. Semantically configuration, so it lives in the config directory.
- ``tokens.json``: the session written by google-mcp. Semantically mutable
  data, so it lives in the data directory.

Resolution order:
    Override: $GOOGLE_MCP_CONFIG_DIR / $GOOGLE_MCP_DATA_DIR (used as-is)
    Windows:  %APPDATA%/google-mcp for both roles
    macOS:    $XDG_CONFIG_HOME/google-mcp or $XDG_DATA_HOME/google-mcp when set,
              otherwise ~/Library/Application Support/google-mcp
    Linux:    $XDG_CONFIG_HOME/google-mcp or ~/.config/google-mcp, and
              $XDG_DATA_HOME/google-mcp or ~/.local/share/google-mcp
"""

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "google-mcp"
CREDENTIALS_FILENAME = "credentials.json"
TOKEN_FILENAME = "tokens.json"

CONFIG_DIR_ENV = "GOOGLE_MCP_CONFIG_DIR"
DATA_DIR_ENV = "GOOGLE_MCP_DATA_DIR"


def _home(platform: str, environ: Mapping[str, str]) -> Path:
    """Home directory taken from the given environment, then the process."""
    home = environ.get("USERPROFILE") if platform == "win32" else None
    home = home or environ.get("HOME")
    return Path(home) if home else Path.home()


def _resolve(
    override_var: str,
    xdg_var: str,
    xdg_default: tuple[str, ...],
    platform: str | None,
    environ: Mapping[str, str] | None,
) -> Path:
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ

    override = environ.get(override_var)
    if override:
        return Path(override).expanduser().absolute()

    home = _home(platform, environ)

    if platform == "win32":
        app_data = environ.get("APPDATA")
        base = Path(app_data) if app_data else home / "AppData" / "Roaming"
        return (base / APP_NAME).absolute()

    xdg = environ.get(xdg_var)
    if xdg:
        return (Path(xdg) / APP_NAME).absolute()

    if platform == "darwin":
        return (home / "Library" / "Application Support" / APP_NAME).absolute()

    return home.joinpath(*xdg_default, APP_NAME).absolute()


def resolve_config_dir(
    platform: str | None = None, environ: Mapping[str, str] | None = None
) -> Path:
    """Resolve the directory holding the OAuth client identity file.

    Args:
        platform: Platform identifier as in ``sys.platform``. Defaults to the host.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Absolute path of the configuration directory.
    """
    return _resolve(CONFIG_DIR_ENV, "XDG_CONFIG_HOME", (".config",), platform, environ)


def resolve_data_dir(
    platform: str | None = None, environ: Mapping[str, str] | None = None
) -> Path:
    """Resolve the directory holding the persisted session.

    Args:
        platform: Platform identifier as in ``sys.platform``. Defaults to the host.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Absolute path of the data directory.
    """
    return _resolve(DATA_DIR_ENV, "XDG_DATA_HOME", (".local", "share"), platform, environ)


@dataclass(frozen=True)
class StoragePaths:
    """Resolved locations of the identity and session files."""

    config_dir: Path
    data_dir: Path

    @property
    def credentials_path(self) -> Path:
        return self.config_dir / CREDENTIALS_FILENAME

    @property
    def token_path(self) -> Path:
        return self.data_dir / TOKEN_FILENAME

    @classmethod
    def resolve(
        cls, platform: str | None = None, environ: Mapping[str, str] | None = None
    ) -> "StoragePaths":
        """Resolve both directories for the given platform and environment."""
        return cls(
            config_dir=resolve_config_dir(platform, environ),
            data_dir=resolve_data_dir(platform, environ),
        )
