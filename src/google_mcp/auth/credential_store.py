"""File-based persistence for the OAuth client identity and session.

Storage Locations (see google_mcp.auth.paths):
    <config dir>/credentials.json  OAuth client, provisioned by the operator
    <data dir>/tokens.json         Session tokens, owned by google-mcp

Reads never raise: a missing file and an unreadable file both come back as a
LoadResult so callers can fall back to re-authentication while still telling
the two apart. The session file is written atomically with owner-only
permissions.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from google_mcp.auth.models import ApplicationIdentity, LoadResult, SessionState
from google_mcp.auth.paths import StoragePaths

logger = logging.getLogger(__name__)


class CredentialStore:
    """JSON storage for ApplicationIdentity and SessionState.

    Attributes:
        paths: Resolved config/data locations.

    Example:
        ```python
        store = CredentialStore()
        store.ensure_directories()

        identity = store.load_application_identity()
        if not identity.found:
            print(f"Place credentials.json at {store.credentials_path}")
        ```
    """

    def __init__(self, paths: StoragePaths | None = None) -> None:
        """Initialize the store.

        Args:
            paths: Storage locations. Resolved from the platform if not provided.
        """
        self.paths = paths or StoragePaths.resolve()

    @property
    def credentials_path(self) -> Path:
        return self.paths.credentials_path

    @property
    def token_path(self) -> Path:
        return self.paths.token_path

    def ensure_directories(self) -> bool:
        """Create the config and data directories with mode 0700 if missing.

        Safe to call repeatedly. Failures are logged, not raised; a later read
        or write inside the directory reports the specific problem.

        Returns:
            True if both directories exist afterwards.
        """
        ok = True
        for directory in dict.fromkeys((self.paths.config_dir, self.paths.data_dir)):
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, mode=0o700, exist_ok=True)
                logger.info("Created directory: %s", directory)
            except OSError as e:
                logger.warning("Could not create directory %s: %s", directory, e)
                ok = False
        return ok

    def _read_json(self, path: Path) -> tuple[object, str | None]:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f), None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            return None, str(e)

    def load_application_identity(self) -> LoadResult[ApplicationIdentity]:
        """Load the OAuth client identity from credentials.json.

        Returns:
            FOUND with the normalized identity, MISSING if the file does not
            exist, CORRUPT if it cannot be parsed or is incomplete.
        """
        path = self.credentials_path
        if not path.exists():
            return LoadResult.missing()

        data, error = self._read_json(path)
        if error is None:
            try:
                return LoadResult.of(ApplicationIdentity.from_client_secrets(data))
            except ValueError as e:
                error = str(e)

        logger.warning("Ignoring unreadable credentials file %s: %s", path, error)
        return LoadResult.corrupt(error)

    def load_session_state(self) -> LoadResult[SessionState]:
        """Load the persisted session from tokens.json.

        Returns:
            FOUND with the session, MISSING if the file does not exist,
            CORRUPT if it cannot be parsed.
        """
        path = self.token_path
        if not path.exists():
            return LoadResult.missing()

        data, error = self._read_json(path)
        if error is None:
            try:
                return LoadResult.of(SessionState.model_validate(data))
            except ValidationError as e:
                error = str(e)

        logger.warning("Ignoring unreadable token file %s: %s", path, error)
        return LoadResult.corrupt(error)

    def save_session_state(self, state: SessionState) -> None:
        """Persist the session as a single JSON document.

        The document is written to a temporary file in the data directory and
        moved over tokens.json, so readers never observe a partial write.

        Args:
            state: Session to persist.

        Raises:
            OSError: If the file cannot be written.
        """
        self.ensure_directories()
        path = self.token_path

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2, exclude_none=True))
            # Set file permissions to owner read/write only (600)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete_session_state(self) -> bool:
        """Remove tokens.json if present.

        Returns:
            True if a file was removed, False if there was nothing to remove
            or it could not be removed.
        """
        try:
            self.token_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not delete token file %s: %s", self.token_path, e)
            return False
        logger.info("Deleted token file: %s", self.token_path)
        return True
