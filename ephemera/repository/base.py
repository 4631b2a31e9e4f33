from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ephemera.models import FileRecord

# Sentinel for force_update fields that should be left untouched.
UNSET = object()


class FileRepository(ABC):
    """Durable metadata for uploaded files.

    Implementations are called from worker threads and must be safe under
    concurrent use. Transport failures surface as ``StoreUnavailable``.
    """

    @abstractmethod
    def insert(self, record: FileRecord) -> FileRecord:
        """Persist a new record; ``Conflict`` if its id or stored name exists."""

    @abstractmethod
    def get_by_id(self, file_id: str) -> Optional[FileRecord]:
        ...

    @abstractmethod
    def list_by_owner(self, owner_id: str, limit: int) -> list[FileRecord]:
        """Owner's unexpired records, newest first, with ``password_hash`` stripped."""

    @abstractmethod
    def increment_download_count(self, file_id: str) -> bool:
        """Atomically bump the download counter if the record is under its limit.

        Returns False when the record is missing or already exhausted, so at
        most ``max_downloads`` calls ever succeed regardless of concurrency.
        """

    @abstractmethod
    def find_expired_or_exhausted(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[FileRecord]:
        """Sweep candidates, expired records first.

        Exhausted records already marked with ``mark_blob_reaped`` are left out
        until they expire.
        """

    @abstractmethod
    def mark_blob_reaped(self, file_id: str) -> None:
        """Flag a retained record whose blob the reaper has removed."""

    @abstractmethod
    def delete(self, file_id: str) -> None:
        """Remove a record. Deleting an unknown id is a no-op."""

    @abstractmethod
    def list_stored_names(self) -> set[str]:
        """Blob names referenced by any record."""

    @abstractmethod
    def force_update(self, file_id: str, *, expires_at=UNSET, download_count=UNSET) -> Optional[FileRecord]:
        """Overwrite lifecycle fields. Testing seam; not part of the production path."""

    @abstractmethod
    def ping(self) -> bool:
        ...
