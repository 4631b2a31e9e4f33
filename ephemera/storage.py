from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path
from typing import BinaryIO

from ephemera.core.exceptions import BlobNotFound

logger = logging.getLogger("ephemera.storage")

_MAX_SLUG_ATTEMPTS = 5
_STORED_NAME_BYTES = 24
CHUNK_SIZE = 64 * 1024


class LocalBlobStore:
    """Uploaded payloads kept as owner-only files under a private directory.

    Blob names are opaque random tokens with no extension. The store never
    cleans up after a caller: a blob abandoned mid-write stays until the
    caller deletes it (or the reaper reconciles it as an orphan).
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        os.chmod(self.root, 0o700)

    def _path(self, stored_name: str) -> Path:
        try:
            path = (self.root / stored_name).resolve()
            path.relative_to(self.root)
        except (ValueError, RuntimeError):
            raise BlobNotFound(f"invalid blob name {stored_name!r}")
        if path == self.root:
            raise BlobNotFound("invalid blob name")
        return path

    def write_new(self) -> tuple[str, BinaryIO]:
        """Allocate a fresh blob and return its name with a writable sink."""
        for _ in range(_MAX_SLUG_ATTEMPTS):
            stored_name = secrets.token_urlsafe(_STORED_NAME_BYTES)
            path = self.root / stored_name
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                continue
            return stored_name, os.fdopen(fd, "wb")
        raise RuntimeError("Unable to allocate a unique blob name")

    def open_read(self, stored_name: str) -> BinaryIO:
        path = self._path(stored_name)
        try:
            return open(path, "rb")
        except (FileNotFoundError, IsADirectoryError):
            raise BlobNotFound(stored_name)

    def age_seconds(self, stored_name: str) -> float:
        try:
            return time.time() - self._path(stored_name).stat().st_mtime
        except FileNotFoundError:
            raise BlobNotFound(stored_name)

    def delete(self, stored_name: str) -> bool:
        """Remove a blob. Deleting a missing blob is not an error."""
        try:
            path = self._path(stored_name)
        except BlobNotFound:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("event=blob_deleted stored_name=%s", stored_name)
        return True

    def list_names(self) -> list[str]:
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_file())
