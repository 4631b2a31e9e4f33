from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every backend stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class FileRecord:
    id: str
    stored_name: str
    original_name: str
    size: int
    owner_id: str
    created_at: datetime
    mime: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_downloads: Optional[int] = None
    download_count: int = 0
    password_hash: Optional[str] = None
    blob_reaped: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    @property
    def is_exhausted(self) -> bool:
        return self.max_downloads is not None and self.download_count >= self.max_downloads

    @property
    def requires_password(self) -> bool:
        return self.password_hash is not None

    @property
    def remaining_downloads(self) -> Optional[int]:
        if self.max_downloads is None:
            return None
        return max(0, self.max_downloads - self.download_count)

    def without_secret(self) -> "FileRecord":
        return replace(self, password_hash=None)


class StoredFile(SQLModel, table=True):
    __tablename__ = "files"

    id: str = Field(primary_key=True)
    stored_name: str = Field(unique=True, index=True)
    original_name: str
    size: int
    mime: Optional[str] = Field(default=None, nullable=True)
    # Naive UTC columns; values never carry tzinfo.
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: Optional[datetime] = Field(default=None, nullable=True, index=True, sa_type=DateTime)
    max_downloads: Optional[int] = Field(default=None, nullable=True)
    download_count: int = Field(default=0)
    password_hash: Optional[str] = Field(default=None, nullable=True)
    owner_id: str = Field(default="public", index=True)
    blob_reaped: bool = Field(default=False)  # exhausted record kept after its blob was reaped

    @classmethod
    def from_record(cls, record: FileRecord) -> "StoredFile":
        return cls(
            id=record.id,
            stored_name=record.stored_name,
            original_name=record.original_name,
            size=record.size,
            mime=record.mime,
            created_at=record.created_at,
            expires_at=record.expires_at,
            max_downloads=record.max_downloads,
            download_count=record.download_count,
            password_hash=record.password_hash,
            owner_id=record.owner_id,
            blob_reaped=record.blob_reaped,
        )

    def to_record(self) -> FileRecord:
        return FileRecord(
            id=self.id,
            stored_name=self.stored_name,
            original_name=self.original_name,
            size=self.size,
            mime=self.mime,
            created_at=self.created_at,
            expires_at=self.expires_at,
            max_downloads=self.max_downloads,
            download_count=self.download_count,
            password_hash=self.password_hash,
            owner_id=self.owner_id,
            blob_reaped=self.blob_reaped,
        )
