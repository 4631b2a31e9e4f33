import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import fakeredis
import pytest
import redis

from ephemera.core.exceptions import Conflict, StoreUnavailable
from ephemera.models import FileRecord, utcnow
from ephemera.repository.redis_store import RedisFileRepository

# Point at a live server to run against real Redis; fakeredis otherwise.
REDIS_URL = os.getenv("TEST_REDIS_URL")


@pytest.fixture
def redis_repository():
    prefix = f"ephemera-test-{uuid.uuid4().hex[:8]}"
    if REDIS_URL:
        client = redis.from_url(REDIS_URL, decode_responses=True)
    else:
        client = fakeredis.FakeRedis(decode_responses=True)
    yield RedisFileRepository(client, prefix=prefix)
    for key in client.scan_iter(match=f"{prefix}:*"):
        client.delete(key)


def _record(file_id, **overrides):
    fields = dict(
        id=file_id,
        stored_name=f"blob-{file_id}",
        original_name=f"{file_id}.txt",
        size=10,
        owner_id="owner",
        created_at=utcnow(),
    )
    fields.update(overrides)
    return FileRecord(**fields)


def test_insert_get_and_conflict(redis_repository):
    record = _record("r1", password_hash="h", max_downloads=2, expires_at=utcnow() + timedelta(hours=1))
    redis_repository.insert(record)

    assert redis_repository.get_by_id("r1") == record
    assert redis_repository.get_by_id("nope") is None
    with pytest.raises(Conflict):
        redis_repository.insert(_record("r1", stored_name="other"))
    with pytest.raises(Conflict):
        redis_repository.insert(_record("r2", stored_name="blob-r1"))


def test_list_by_owner(redis_repository):
    base = utcnow()
    redis_repository.insert(_record("old", created_at=base - timedelta(minutes=1), password_hash="h"))
    redis_repository.insert(_record("new", created_at=base))
    redis_repository.insert(_record("gone", expires_at=base - timedelta(minutes=1)))

    items = redis_repository.list_by_owner("owner", 10)
    assert [item.id for item in items] == ["new", "old"]
    assert all(item.password_hash is None for item in items)


def test_guarded_increment_under_contention(redis_repository):
    redis_repository.insert(_record("hot", max_downloads=3))
    barrier = threading.Barrier(8)

    def _claim(_):
        barrier.wait()
        return redis_repository.increment_download_count("hot")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_claim, range(8)))

    assert results.count(True) == 3
    assert redis_repository.get_by_id("hot").download_count == 3
    assert redis_repository.increment_download_count("missing") is False


def test_sweep_candidates_and_delete(redis_repository):
    now = datetime(2026, 1, 1)
    redis_repository.insert(_record("expired", expires_at=now - timedelta(seconds=1)))
    redis_repository.insert(_record("boundary", expires_at=now))
    redis_repository.insert(_record("used", max_downloads=1))
    redis_repository.increment_download_count("used")

    found = {r.id for r in redis_repository.find_expired_or_exhausted(10, now=now)}
    assert found == {"expired", "used"}

    redis_repository.delete("expired")
    redis_repository.delete("expired")
    assert redis_repository.list_stored_names() == {"blob-boundary", "blob-used"}


def test_force_update(redis_repository):
    redis_repository.insert(_record("f1", max_downloads=2))
    updated = redis_repository.force_update("f1", download_count=2, expires_at=datetime(2020, 1, 1))
    assert updated.download_count == 2
    assert updated.expires_at == datetime(2020, 1, 1)
    assert redis_repository.force_update("missing", download_count=1) is None


def test_unreachable_server_is_store_unavailable():
    repo = RedisFileRepository.from_url("redis://127.0.0.1:1/0")
    assert repo.ping() is False
    with pytest.raises(StoreUnavailable):
        repo.get_by_id("x")


def test_reaped_exhausted_record_waits_for_expiry(redis_repository):
    now = datetime(2026, 1, 1)
    redis_repository.insert(_record("used", max_downloads=1, expires_at=now + timedelta(hours=1)))
    redis_repository.increment_download_count("used")
    redis_repository.insert(_record("late", expires_at=now - timedelta(minutes=1)))

    assert {r.id for r in redis_repository.find_expired_or_exhausted(10, now=now)} == {"used", "late"}

    redis_repository.mark_blob_reaped("used")
    redis_repository.mark_blob_reaped("missing")
    assert redis_repository.get_by_id("used").blob_reaped is True
    assert [r.id for r in redis_repository.find_expired_or_exhausted(10, now=now)] == ["late"]

    later = now + timedelta(hours=2)
    assert {r.id for r in redis_repository.find_expired_or_exhausted(10, now=later)} == {"used", "late"}
