"""Credential snapshot persistence.

The snapshot's schema belongs to the transport; this store only guarantees
that the last saved snapshot is what the next connect attempt reads.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Protocol

CREDENTIALS_FILE = "creds.json"


class CredentialStoreError(Exception):
    """Raised when the stored snapshot cannot be read or written."""


class CredentialStore(Protocol):
    def load(self) -> dict[str, Any] | None:
        ...

    def save(self, snapshot: dict[str, Any]) -> None:
        ...

    def clear(self) -> None:
        ...


class FileCredentialStore:
    """Snapshot kept as `<directory>/creds.json`, replaced atomically on save."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def path(self) -> Path:
        return self._directory / CREDENTIALS_FILE

    def load(self) -> dict[str, Any] | None:
        path = self.path
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CredentialStoreError(f"Failed to read credentials {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise CredentialStoreError(f"Invalid credentials {path}: root is not object")
        return raw

    def save(self, snapshot: dict[str, Any]) -> None:
        path = self.path
        tmp_path = path.with_suffix(".tmp")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, indent=2, sort_keys=True)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise CredentialStoreError(f"Failed to save credentials {path}: {exc}") from exc

    def clear(self) -> None:
        """Forget the session, forcing a fresh QR pairing on the next start."""
        self.path.unlink(missing_ok=True)
