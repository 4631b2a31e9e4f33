from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Pattern

from passlib.context import CryptContext

from ephemera.core.exceptions import (
    BlobMissing,
    BlobNotFound,
    Conflict,
    EmptyFile,
    Expired,
    FileTooLarge,
    InvalidDownloadLimit,
    MimeNotAllowed,
    NotFound,
    PasswordPolicyViolation,
    PasswordTooLong,
    ServerFault,
    ServerMisconfigured,
    ShareError,
    Unauthorized,
)
from ephemera.core.metrics import MetricsStore
from ephemera.core.security import secrets_match
from ephemera.models import FileRecord, utcnow
from ephemera.repository.base import FileRepository
from ephemera.services.access import Decision, evaluate, raise_for_decision
from ephemera.storage import CHUNK_SIZE, LocalBlobStore

logger = logging.getLogger("ephemera.lifecycle")

MAX_EXPIRY = timedelta(days=30)
MAX_PASSWORD_LENGTH = 30
MAX_FILENAME_LENGTH = 200
DEFAULT_MIME = "application/octet-stream"

_EXPIRY_PATTERN = re.compile(r"([0-9]+)([mhd])")
_DIGITS = re.compile(r"[0-9]+")
_EXPIRY_UNITS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")
_SLUG_ALPHABET = string.ascii_letters + string.digits
_MAX_SLUG_ATTEMPTS = 5


def generate_file_id(length: int = 10) -> str:
    return "".join(secrets.choice(_SLUG_ALPHABET) for _ in range(length))


def parse_expiry(token: Optional[str], now: datetime) -> datetime:
    """Turn an ``<n><m|h|d>`` token into an absolute expiry.

    The result never lies more than 30 days past ``now``. Missing, malformed
    or non-positive tokens fall back to that ceiling instead of failing.
    """
    ceiling = now + MAX_EXPIRY
    match = _EXPIRY_PATTERN.fullmatch((token or "").strip())
    if not match:
        return ceiling
    amount = int(match.group(1))
    if amount <= 0:
        return ceiling
    unit = _EXPIRY_UNITS[match.group(2)]
    # Compare in whole units so huge values cannot overflow timedelta.
    if amount >= MAX_EXPIRY / unit:
        return ceiling
    return now + amount * unit


def parse_download_limit(raw: Optional[str]) -> Optional[int]:
    text = "" if raw is None else str(raw).strip()
    if text == "":
        return None
    # ASCII digits only: int() would also take "+5", "1_000" and non-Latin numerals.
    if not _DIGITS.fullmatch(text):
        raise InvalidDownloadLimit()
    value = int(text)
    if value <= 0:
        raise InvalidDownloadLimit()
    return value


def sanitize_filename(name: Optional[str]) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name or "")[:MAX_FILENAME_LENGTH]
    return cleaned or "file"


@dataclass(frozen=True)
class UploadPolicy:
    max_size_bytes: int
    require_password: bool = False
    admin_only: bool = False
    admin_password: Optional[str] = None
    allowed_mime: Optional[Pattern[str]] = None

    @classmethod
    def from_config(cls) -> "UploadPolicy":
        from ephemera import config

        return cls(
            max_size_bytes=config.MAX_FILE_SIZE,
            require_password=config.REQUIRE_FILE_PASSWORDS,
            admin_only=config.ADMIN_ONLY_UPLOADS,
            admin_password=config.ADMIN_PASSWORD,
            allowed_mime=re.compile(config.ALLOWED_MIME_REGEX) if config.ALLOWED_MIME_REGEX else None,
        )


@dataclass
class DownloadHandle:
    """An authorized, already-counted download ready to be streamed."""

    record: FileRecord
    stream: BinaryIO
    filename: str
    size: int
    _closed: bool = field(default=False, repr=False)

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        try:
            for chunk in iter(lambda: self.stream.read(chunk_size), b""):
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.stream.close()


@dataclass(frozen=True)
class FilePreview:
    id: str
    original_name: str
    expires_at: Optional[datetime]
    requires_password: bool


@dataclass(frozen=True)
class RecentUpload:
    id: str
    filename: str
    size: int
    expires_at: Optional[datetime]
    remaining_downloads: Optional[int]


class PendingUpload:
    """A payload being written to its blob, not yet visible to anyone.

    ``write`` enforces the size cap on every chunk, so an oversized upload
    fails while it is still arriving. ``finish`` validates the form fields
    and inserts the record; any failure there, or an explicit ``abort``,
    deletes the blob.
    """

    def __init__(self, engine: "LifecycleEngine", stored_name: str, sink: BinaryIO) -> None:
        self._engine = engine
        self.stored_name = stored_name
        self._sink = sink
        self.size = 0
        self._done = False

    def write(self, chunk: bytes) -> None:
        if self._done:
            raise RuntimeError("upload already finished")
        if not chunk:
            return
        self.size += len(chunk)
        limit = self._engine.policy.max_size_bytes
        if self.size > limit:
            raise FileTooLarge(f"file too large (max {limit} bytes)")
        self._sink.write(chunk)

    def finish(
        self,
        *,
        filename: str,
        mime: Optional[str],
        owner_id: str,
        expires_in: Optional[str] = None,
        max_downloads: Optional[str] = None,
        password: Optional[str] = None,
        admin_password: Optional[str] = None,
    ) -> FileRecord:
        if self._done:
            raise RuntimeError("upload already finished")
        engine = self._engine
        try:
            self._sink.close()
            record = engine._finalize(
                self.stored_name,
                self.size,
                filename=filename,
                mime=mime or DEFAULT_MIME,
                owner_id=owner_id,
                expires_in=expires_in,
                max_downloads=max_downloads,
                password=password,
                admin_password=admin_password,
            )
        except Exception as exc:
            self.abort(exc, filename=filename, owner_id=owner_id)
            raise
        self._done = True

        engine.metrics.record_upload(record.size)
        logger.info(
            "event=upload_success file_id=%s size_bytes=%s content_type=%s expires_at=%s max_downloads=%s protected=%s",
            record.id,
            record.size,
            record.mime,
            record.expires_at.isoformat() if record.expires_at else None,
            record.max_downloads,
            record.requires_password,
        )
        return record

    def abort(
        self,
        exc: Optional[BaseException] = None,
        *,
        filename: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        """Discard the blob. Safe to call more than once."""
        if self._done:
            return
        self._done = True
        try:
            self._sink.close()
        except OSError as close_exc:
            logger.warning("event=blob_close_failed stored_name=%s error=%s", self.stored_name, close_exc)
        self._engine._discard_blob(self.stored_name)
        self._engine.metrics.record_rejected_upload()
        if isinstance(exc, ShareError) and exc.status_code < 500:
            logger.warning(
                "event=upload_rejected reason=%s filename=%s owner_id=%s",
                exc.code,
                filename,
                owner_id,
            )


class LifecycleEngine:
    """Upload finalization and download authorization over a repository and blob store."""

    def __init__(
        self,
        repository: FileRepository,
        blob_store: LocalBlobStore,
        policy: UploadPolicy,
        passwords: CryptContext,
        metrics: Optional[MetricsStore] = None,
        clock: Callable[[], datetime] = utcnow,
        id_length: int = 10,
    ) -> None:
        self.repository = repository
        self.blob_store = blob_store
        self.policy = policy
        self._passwords = passwords
        self.metrics = metrics or MetricsStore()
        self._clock = clock
        self._id_length = id_length

    # Upload path

    def begin_upload(self) -> "PendingUpload":
        """Allocate a blob for an incoming payload; see ``PendingUpload``."""
        stored_name, sink = self.blob_store.write_new()
        return PendingUpload(self, stored_name, sink)

    def upload(
        self,
        chunks: Iterable[bytes],
        *,
        filename: str,
        mime: Optional[str],
        owner_id: str,
        expires_in: Optional[str] = None,
        max_downloads: Optional[str] = None,
        password: Optional[str] = None,
        admin_password: Optional[str] = None,
    ) -> FileRecord:
        pending = self.begin_upload()
        try:
            for chunk in chunks:
                pending.write(chunk)
        except Exception as exc:
            pending.abort(exc, filename=filename, owner_id=owner_id)
            raise
        return pending.finish(
            filename=filename,
            mime=mime,
            owner_id=owner_id,
            expires_in=expires_in,
            max_downloads=max_downloads,
            password=password,
            admin_password=admin_password,
        )

    def _finalize(
        self,
        stored_name: str,
        size: int,
        *,
        filename: str,
        mime: str,
        owner_id: str,
        expires_in: Optional[str],
        max_downloads: Optional[str],
        password: Optional[str],
        admin_password: Optional[str],
    ) -> FileRecord:
        policy = self.policy
        if size == 0:
            raise EmptyFile()

        if policy.admin_only:
            if not policy.admin_password:
                logger.error("event=misconfiguration reason=admin_only_without_password")
                raise ServerMisconfigured()
            if not secrets_match(admin_password, policy.admin_password):
                raise Unauthorized()

        now = self._clock()
        expires_at = parse_expiry(expires_in, now)
        limit = parse_download_limit(max_downloads)

        password = (password or "").strip() or None
        if password is not None and len(password) > MAX_PASSWORD_LENGTH:
            raise PasswordTooLong(f"password too long (max {MAX_PASSWORD_LENGTH})")
        if policy.require_password and password is None:
            raise PasswordPolicyViolation()

        if policy.allowed_mime is not None and not policy.allowed_mime.search(mime):
            raise MimeNotAllowed()

        password_hash = self._passwords.hash(password) if password is not None else None

        for _ in range(_MAX_SLUG_ATTEMPTS):
            record = FileRecord(
                id=generate_file_id(self._id_length),
                stored_name=stored_name,
                original_name=filename or "file",
                size=size,
                mime=mime,
                owner_id=owner_id,
                created_at=now,
                expires_at=expires_at,
                max_downloads=limit,
                download_count=0,
                password_hash=password_hash,
            )
            try:
                return self.repository.insert(record)
            except Conflict:
                logger.warning("event=file_id_collision file_id=%s", record.id)
        raise ServerFault("unable to allocate a unique file id")

    def _discard_blob(self, stored_name: str) -> None:
        try:
            self.blob_store.delete(stored_name)
        except OSError as exc:
            # Never mask the error that caused the rollback.
            logger.error("event=blob_rollback_failed stored_name=%s error=%s", stored_name, exc)

    # Download path

    def _verify(self, plain: str, hashed: str) -> bool:
        try:
            return self._passwords.verify(plain, hashed)
        except (ValueError, TypeError):
            logger.error("event=password_hash_unreadable")
            return False

    def _refuse(self, file_id: str, decision: Decision) -> None:
        self.metrics.record_refused_download()
        logger.info("event=download_refused file_id=%s reason=%s", file_id, decision.value)
        raise_for_decision(decision)

    def open_download(self, file_id: str, password: Optional[str] = None) -> DownloadHandle:
        """Authorize and count one download, returning the open payload.

        The counter is incremented before any byte is sent; a transfer the
        client abandons midway stays counted.
        """
        record = self.repository.get_by_id(file_id)
        decision = evaluate(record, self._clock(), password, self._verify)
        if decision is not Decision.ALLOW:
            self._refuse(file_id, decision)

        try:
            stream = self.blob_store.open_read(record.stored_name)
        except BlobNotFound:
            logger.error(
                "event=blob_missing file_id=%s stored_name=%s", record.id, record.stored_name
            )
            raise BlobMissing()

        try:
            claimed = self.repository.increment_download_count(record.id)
        except Exception:
            stream.close()
            raise
        if not claimed:
            stream.close()
            self._refuse(file_id, Decision.LIMIT_REACHED)

        record.download_count += 1
        self.metrics.record_download()
        logger.info(
            "event=download_authorized file_id=%s download_count=%s max_downloads=%s",
            record.id,
            record.download_count,
            record.max_downloads,
        )
        return DownloadHandle(
            record=record,
            stream=stream,
            filename=sanitize_filename(record.original_name),
            size=record.size,
        )

    # Read-only views

    def peek(self, file_id: str) -> FilePreview:
        record = self.repository.get_by_id(file_id)
        if record is None:
            raise NotFound()
        if record.is_expired(self._clock()):
            raise Expired()
        return FilePreview(
            id=record.id,
            original_name=record.original_name,
            expires_at=record.expires_at,
            requires_password=record.requires_password,
        )

    def recent(self, owner_id: str, limit: int = 25) -> list[RecentUpload]:
        return [
            RecentUpload(
                id=record.id,
                filename=record.original_name,
                size=record.size,
                expires_at=record.expires_at,
                remaining_downloads=record.remaining_downloads,
            )
            for record in self.repository.list_by_owner(owner_id, limit)
        ]
