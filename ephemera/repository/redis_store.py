from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Optional

import redis

from ephemera.core.exceptions import Conflict, StoreUnavailable
from ephemera.models import FileRecord, utcnow
from ephemera.repository.base import UNSET, FileRepository

logger = logging.getLogger("ephemera.repository")

_FIELDS = (
    "id",
    "stored_name",
    "original_name",
    "size",
    "mime",
    "created_at",
    "expires_at",
    "max_downloads",
    "download_count",
    "password_hash",
    "owner_id",
    "blob_reaped",
)


def _score(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def _encode(record: FileRecord) -> dict[str, str]:
    def _text(value) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    return {name: _text(getattr(record, name)) for name in _FIELDS}


def _decode(data: dict[str, str]) -> FileRecord:
    def _opt(name: str) -> Optional[str]:
        value = data.get(name, "")
        return value if value != "" else None

    expires = _opt("expires_at")
    limit = _opt("max_downloads")
    return FileRecord(
        id=data["id"],
        stored_name=data["stored_name"],
        original_name=data["original_name"],
        size=int(data["size"]),
        mime=_opt("mime"),
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(expires) if expires else None,
        max_downloads=int(limit) if limit is not None else None,
        download_count=int(data.get("download_count") or 0),
        password_hash=_opt("password_hash"),
        owner_id=data.get("owner_id") or "public",
        blob_reaped=data.get("blob_reaped") == "1",
    )


def _store_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            logger.error("event=store_unavailable backend=redis error=%s", exc)
            raise StoreUnavailable() from exc

    return wrapper


class RedisFileRepository(FileRepository):
    """Document-style backend: one hash per record plus index keys.

    Keys (under ``prefix``):
      file:<id>         hash of the record fields
      stored:<name>     -> id, enforces stored_name uniqueness
      owner:<owner_id>  sorted set of ids scored by created_at
      expiry            sorted set of ids scored by expires_at
      exhausted         set of ids that reached max_downloads
    """

    def __init__(self, client: redis.Redis, prefix: str = "ephemera") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "ephemera") -> "RedisFileRepository":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def _file_key(self, file_id: str) -> str:
        return self._key("file", file_id)

    def _fetch_many(self, ids) -> list[FileRecord]:
        ids = list(ids)
        if not ids:
            return []
        pipe = self._client.pipeline(transaction=False)
        for file_id in ids:
            pipe.hgetall(self._file_key(file_id))
        return [_decode(data) for data in pipe.execute() if data]

    @_store_errors
    def insert(self, record: FileRecord) -> FileRecord:
        file_key = self._file_key(record.id)
        stored_key = self._key("stored", record.stored_name)

        def _txn(pipe):
            if pipe.exists(file_key) or pipe.exists(stored_key):
                raise Conflict(f"file {record.id} already exists")
            pipe.multi()
            pipe.hset(file_key, mapping=_encode(record))
            pipe.set(stored_key, record.id)
            pipe.zadd(self._key("owner", record.owner_id), {record.id: _score(record.created_at)})
            if record.expires_at is not None:
                pipe.zadd(self._key("expiry"), {record.id: _score(record.expires_at)})

        self._client.transaction(_txn, file_key, stored_key)
        return record

    @_store_errors
    def get_by_id(self, file_id: str) -> Optional[FileRecord]:
        data = self._client.hgetall(self._file_key(file_id))
        return _decode(data) if data else None

    @_store_errors
    def list_by_owner(self, owner_id: str, limit: int) -> list[FileRecord]:
        now = utcnow()
        ids = self._client.zrevrange(self._key("owner", owner_id), 0, -1)
        items: list[FileRecord] = []
        for record in self._fetch_many(ids):
            if record.expires_at is not None and record.expires_at <= now:
                continue
            items.append(record.without_secret())
            if len(items) >= limit:
                break
        return items

    @_store_errors
    def increment_download_count(self, file_id: str) -> bool:
        file_key = self._file_key(file_id)
        exhausted_key = self._key("exhausted")

        # Optimistic compare-and-set: redis-py retries the callable on WatchError.
        def _claim(pipe) -> bool:
            count, limit = pipe.hmget(file_key, "download_count", "max_downloads")
            if count is None:
                return False
            count = int(count or 0)
            limit = int(limit) if limit else None
            if limit is not None and count >= limit:
                return False
            pipe.multi()
            pipe.hincrby(file_key, "download_count", 1)
            if limit is not None and count + 1 >= limit:
                pipe.sadd(exhausted_key, file_id)
            return True

        return self._client.transaction(_claim, file_key, value_from_callable=True)

    @_store_errors
    def find_expired_or_exhausted(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[FileRecord]:
        now = now or utcnow()
        expired = self._client.zrangebyscore(
            self._key("expiry"), "-inf", f"({_score(now)}", start=0, num=limit
        )
        ids = list(dict.fromkeys(expired))
        if len(ids) < limit:
            for file_id in self._client.smembers(self._key("exhausted")):
                if file_id not in ids:
                    ids.append(file_id)
                if len(ids) >= limit:
                    break
        return [
            r
            for r in self._fetch_many(ids)
            if r.is_expired(now) or (r.is_exhausted and not r.blob_reaped)
        ]

    @_store_errors
    def mark_blob_reaped(self, file_id: str) -> None:
        file_key = self._file_key(file_id)

        def _txn(pipe):
            if not pipe.exists(file_key):
                return
            pipe.multi()
            pipe.hset(file_key, "blob_reaped", "1")
            # Only the expiry index finds it from now on.
            pipe.srem(self._key("exhausted"), file_id)

        self._client.transaction(_txn, file_key)

    @_store_errors
    def delete(self, file_id: str) -> None:
        file_key = self._file_key(file_id)
        stored_name, owner_id = self._client.hmget(file_key, "stored_name", "owner_id")
        pipe = self._client.pipeline()
        pipe.delete(file_key)
        if stored_name:
            pipe.delete(self._key("stored", stored_name))
        if owner_id:
            pipe.zrem(self._key("owner", owner_id), file_id)
        pipe.zrem(self._key("expiry"), file_id)
        pipe.srem(self._key("exhausted"), file_id)
        pipe.execute()

    @_store_errors
    def list_stored_names(self) -> set[str]:
        prefix = self._key("stored", "")
        return {key[len(prefix):] for key in self._client.scan_iter(match=f"{prefix}*")}

    @_store_errors
    def force_update(self, file_id: str, *, expires_at=UNSET, download_count=UNSET) -> Optional[FileRecord]:
        record = self.get_by_id(file_id)
        if record is None:
            return None
        file_key = self._file_key(file_id)
        pipe = self._client.pipeline()
        if expires_at is not UNSET:
            record.expires_at = expires_at
            if expires_at is None:
                pipe.hset(file_key, "expires_at", "")
                pipe.zrem(self._key("expiry"), file_id)
            else:
                pipe.hset(file_key, "expires_at", expires_at.isoformat())
                pipe.zadd(self._key("expiry"), {file_id: _score(expires_at)})
        if download_count is not UNSET:
            record.download_count = download_count
            pipe.hset(file_key, "download_count", str(download_count))
            if record.is_exhausted:
                pipe.sadd(self._key("exhausted"), file_id)
            else:
                pipe.srem(self._key("exhausted"), file_id)
        pipe.execute()
        return self.get_by_id(file_id)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False
