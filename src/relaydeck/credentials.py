"""Storage for the relay access key."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from .logging_utils import get_logger

CREDENTIALS_PATH = Path.home() / ".config" / "relaydeck" / "credentials"
_ENV_API_KEY = "RELAYDECK_API_KEY"

log = get_logger(__name__)


class CredentialStore:
    """Hold the access key sent with every request and persist it to disk.

    The key is cleared (in memory and on disk) when the relay rejects it.
    """

    def __init__(self, path: Optional[Path] = None, *, persist: bool = True) -> None:
        self._path = path or CREDENTIALS_PATH
        self._persist = persist
        self._api_key: Optional[str] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    @property
    def is_authenticated(self) -> bool:
        return bool(self._api_key)

    def load(self) -> Optional[str]:
        """Restore the key from ``RELAYDECK_API_KEY`` or the credentials file."""

        env_key = os.getenv(_ENV_API_KEY)
        if env_key and env_key.strip():
            self._api_key = env_key.strip()
            log.debug("Using access key from %s", _ENV_API_KEY)
            return self._api_key
        if not self._persist or not self._path.exists():
            return self._api_key
        try:
            stored = self._path.read_text(encoding="utf8").strip()
        except OSError as exc:
            log.warning("Could not read credentials from %s: %s", self._path, exc)
            return self._api_key
        self._api_key = stored or None
        return self._api_key

    def set_api_key(self, key: Optional[str]) -> None:
        key = key.strip() if key else None
        if not key:
            self.clear()
            return
        self._api_key = key
        if not self._persist:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf8") as handle:
                # A file left over from an earlier run keeps its old mode otherwise.
                os.fchmod(handle.fileno(), 0o600)
                handle.write(key + "\n")
        except OSError as exc:
            log.warning("Could not persist credentials to %s: %s", self._path, exc)

    def clear(self) -> None:
        self._api_key = None
        if not self._persist:
            return
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("Could not remove credentials at %s: %s", self._path, exc)


__all__ = ["CREDENTIALS_PATH", "CredentialStore"]
