"""Version information for google-mcp."""

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DISTRIBUTION_NAME = "google-mcp"


def _get_version() -> str:
    """Get version from the installed distribution, a source checkout, or the fallback."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        pass

    # Running from a source checkout (src/google_mcp/__version__.py)
    checkout_version = Path(__file__).resolve().parents[2] / "VERSION"
    if checkout_version.is_file():
        return checkout_version.read_text().strip()

    return "0.1.0"


__version__ = _get_version()
