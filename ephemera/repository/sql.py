from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import and_, case, delete, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from ephemera.core.exceptions import Conflict, StoreUnavailable
from ephemera.db import ensure_connection
from ephemera.models import FileRecord, StoredFile, utcnow
from ephemera.repository.base import UNSET, FileRepository

logger = logging.getLogger("ephemera.repository")


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except OperationalError as exc:
        logger.error("event=store_unavailable backend=sql error=%s", exc)
        raise StoreUnavailable() from exc


class SqlFileRepository(FileRepository):
    """Relational backend over SQLModel (SQLite by default, any SQLAlchemy URL)."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def insert(self, record: FileRecord) -> FileRecord:
        with _store_errors(), Session(self._engine) as session:
            session.add(StoredFile.from_record(record))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise Conflict(f"file {record.id} already exists") from exc
        return record

    def get_by_id(self, file_id: str) -> Optional[FileRecord]:
        with _store_errors(), Session(self._engine) as session:
            row = session.get(StoredFile, file_id)
            return row.to_record() if row else None

    def list_by_owner(self, owner_id: str, limit: int) -> list[FileRecord]:
        now = utcnow()
        stmt = (
            select(StoredFile)
            .where(
                StoredFile.owner_id == owner_id,
                or_(StoredFile.expires_at == None, StoredFile.expires_at > now),  # noqa: E711
            )
            .order_by(StoredFile.created_at.desc())
            .limit(limit)
        )
        with _store_errors(), Session(self._engine) as session:
            return [row.to_record().without_secret() for row in session.exec(stmt).all()]

    def increment_download_count(self, file_id: str) -> bool:
        # Single guarded UPDATE: the row is only bumped while still under its limit.
        stmt = (
            update(StoredFile)
            .where(
                StoredFile.id == file_id,
                or_(
                    StoredFile.max_downloads == None,  # noqa: E711
                    StoredFile.download_count < StoredFile.max_downloads,
                ),
            )
            .values(download_count=StoredFile.download_count + 1)
        )
        with _store_errors(), self._engine.begin() as conn:
            claimed = conn.execute(stmt).rowcount == 1
        return claimed

    def find_expired_or_exhausted(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[FileRecord]:
        now = now or utcnow()
        expired = and_(StoredFile.expires_at != None, StoredFile.expires_at < now)  # noqa: E711
        exhausted = and_(
            StoredFile.max_downloads != None,  # noqa: E711
            StoredFile.download_count >= StoredFile.max_downloads,
            StoredFile.blob_reaped == False,  # noqa: E712
        )
        stmt = (
            select(StoredFile)
            .where(or_(expired, exhausted))
            .order_by(case((expired, 0), else_=1), StoredFile.created_at)
            .limit(limit)
        )
        with _store_errors(), Session(self._engine) as session:
            return [row.to_record() for row in session.exec(stmt).all()]

    def mark_blob_reaped(self, file_id: str) -> None:
        with _store_errors(), self._engine.begin() as conn:
            conn.execute(update(StoredFile).where(StoredFile.id == file_id).values(blob_reaped=True))

    def delete(self, file_id: str) -> None:
        with _store_errors(), self._engine.begin() as conn:
            conn.execute(delete(StoredFile).where(StoredFile.id == file_id))

    def list_stored_names(self) -> set[str]:
        with _store_errors(), Session(self._engine) as session:
            return set(session.exec(select(StoredFile.stored_name)).all())

    def force_update(self, file_id: str, *, expires_at=UNSET, download_count=UNSET) -> Optional[FileRecord]:
        values = {}
        if expires_at is not UNSET:
            values["expires_at"] = expires_at
        if download_count is not UNSET:
            values["download_count"] = download_count
        if values:
            with _store_errors(), self._engine.begin() as conn:
                conn.execute(update(StoredFile).where(StoredFile.id == file_id).values(**values))
        return self.get_by_id(file_id)

    def ping(self) -> bool:
        return ensure_connection(self._engine)
