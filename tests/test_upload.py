import re
import stat
from datetime import datetime, timedelta

import pytest

from ephemera.core.exceptions import (
    EmptyFile,
    FileTooLarge,
    InvalidDownloadLimit,
    MimeNotAllowed,
    PasswordPolicyViolation,
    PasswordTooLong,
    ServerMisconfigured,
    Unauthorized,
)
from ephemera.models import FileRecord
from ephemera.services import lifecycle as lifecycle_module
from ephemera.services.lifecycle import (
    MAX_EXPIRY,
    parse_download_limit,
    parse_expiry,
    sanitize_filename,
)

NOW = datetime(2026, 3, 1, 8, 30, 0)


def _clock():
    return NOW


def _upload(engine, data=b"hello", **kwargs):
    kwargs.setdefault("filename", "hello.txt")
    kwargs.setdefault("mime", "text/plain")
    kwargs.setdefault("owner_id", "owner-1")
    return engine.upload([data], **kwargs)


def _assert_nothing_stored(repository, blob_store):
    assert blob_store.list_names() == []
    assert repository.list_stored_names() == set()


def test_upload_persists_blob_and_record(make_engine, repository, blob_store):
    engine = make_engine(clock=_clock)
    record = _upload(engine, b"hello world", max_downloads="3")

    assert re.fullmatch(r"[A-Za-z0-9]{10}", record.id)
    assert record.size == 11
    assert record.download_count == 0
    assert record.max_downloads == 3
    assert record.created_at == NOW
    assert record.password_hash is None

    stored = repository.get_by_id(record.id)
    assert stored.stored_name == record.stored_name
    assert (blob_store.root / record.stored_name).stat().st_size == stored.size
    mode = stat.S_IMODE((blob_store.root / record.stored_name).stat().st_mode)
    assert mode == 0o600


def test_missing_mime_defaults_to_octet_stream(make_engine):
    record = _upload(make_engine(), mime=None)
    assert record.mime == "application/octet-stream"


def test_expiry_clamped_to_thirty_days(make_engine):
    record = _upload(make_engine(clock=_clock), expires_in="999d")
    assert record.expires_at == NOW + MAX_EXPIRY


@pytest.mark.parametrize("token", ["notatime", "-1d", "", None, "0h", "5w", "1.5h", "١٢h", "３d"])
def test_malformed_expiry_falls_back_to_ceiling(make_engine, token):
    record = _upload(make_engine(clock=_clock), expires_in=token)
    assert record.expires_at == NOW + timedelta(days=30)


@pytest.mark.parametrize(
    "token, delta",
    [("15m", timedelta(minutes=15)), ("2h", timedelta(hours=2)), ("7d", timedelta(days=7))],
)
def test_parse_expiry_units(token, delta):
    assert parse_expiry(token, NOW) == NOW + delta


def test_parse_expiry_huge_value_does_not_overflow():
    assert parse_expiry("9" * 40 + "m", NOW) == NOW + MAX_EXPIRY


@pytest.mark.parametrize("raw, expected", [(None, None), ("", None), ("  ", None), ("1", 1), (" 25 ", 25)])
def test_parse_download_limit(raw, expected):
    assert parse_download_limit(raw) == expected


@pytest.mark.parametrize("raw", ["0", "-3", "abc", "1.5", "2x", "+5", "1_000", "١٢", "５", "²"])
def test_parse_download_limit_rejects(raw):
    with pytest.raises(InvalidDownloadLimit):
        parse_download_limit(raw)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("report.pdf", "report.pdf"),
        ("my file (1).txt", "my_file_1_.txt"),
        ('evil"; filename=x.sh', "evil_filename_x.sh"),
        ("", "file"),
        (None, "file"),
    ],
)
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_sanitize_filename_caps_length():
    assert len(sanitize_filename("a" * 500)) == 200


def test_oversized_upload_aborts_while_streaming(make_engine, repository, blob_store):
    engine = make_engine(max_size_bytes=10)
    consumed = []

    def _chunks():
        for i in range(100):
            consumed.append(i)
            yield b"x" * 8

    with pytest.raises(FileTooLarge):
        engine.upload(_chunks(), filename="big.bin", mime="application/octet-stream", owner_id="o")

    assert len(consumed) == 2
    _assert_nothing_stored(repository, blob_store)


def test_upload_exactly_at_limit_is_accepted(make_engine):
    record = _upload(make_engine(max_size_bytes=5), b"12345")
    assert record.size == 5


@pytest.mark.parametrize(
    "policy, kwargs, error",
    [
        ({}, {"data": b""}, EmptyFile),
        ({}, {"max_downloads": "abc"}, InvalidDownloadLimit),
        ({}, {"max_downloads": "0"}, InvalidDownloadLimit),
        ({}, {"password": "x" * 31}, PasswordTooLong),
        ({"require_password": True}, {}, PasswordPolicyViolation),
        ({"require_password": True}, {"password": "   "}, PasswordPolicyViolation),
        ({"allowed_mime": re.compile(r"^image/")}, {"mime": "text/plain"}, MimeNotAllowed),
        ({"admin_only": True, "admin_password": "secret"}, {}, Unauthorized),
        ({"admin_only": True, "admin_password": "secret"}, {"admin_password": "nope"}, Unauthorized),
        ({"admin_only": True}, {"admin_password": "anything"}, ServerMisconfigured),
    ],
)
def test_rejected_uploads_leave_no_blob(make_engine, repository, blob_store, policy, kwargs, error):
    engine = make_engine(**policy)
    data = kwargs.pop("data", b"payload")
    with pytest.raises(error):
        _upload(engine, data, **kwargs)
    _assert_nothing_stored(repository, blob_store)
    assert engine.metrics.snapshot()["uploads_rejected"] == 1


def test_admin_only_accepts_matching_secret(make_engine):
    engine = make_engine(admin_only=True, admin_password="secret")
    record = _upload(engine, admin_password="secret")
    assert record.id


def test_password_is_trimmed_and_hashed(make_engine, passwords):
    record = _upload(make_engine(), password="  pw  ")
    assert record.password_hash is not None
    assert record.password_hash != "pw"
    assert passwords.verify("pw", record.password_hash)


def test_thirty_character_password_is_allowed(make_engine):
    record = _upload(make_engine(), password="p" * 30)
    assert record.requires_password


def test_rollback_failure_does_not_mask_original_error(make_engine, blob_store, monkeypatch):
    engine = make_engine()

    def _broken_delete(name):
        raise OSError("disk on fire")

    monkeypatch.setattr(blob_store, "delete", _broken_delete)
    with pytest.raises(EmptyFile):
        _upload(engine, b"")


def test_id_collision_retries_with_fresh_id(make_engine, repository, monkeypatch):
    repository.insert(
        FileRecord(
            id="taken00000",
            stored_name="other-blob",
            original_name="x",
            size=1,
            owner_id="o",
            created_at=NOW,
        )
    )
    ids = iter(["taken00000", "fresh00000"])
    monkeypatch.setattr(lifecycle_module, "generate_file_id", lambda length=10: next(ids))

    record = _upload(make_engine())
    assert record.id == "fresh00000"
    assert repository.get_by_id("fresh00000").stored_name == record.stored_name


def test_pending_upload_rejects_oversize_mid_stream(make_engine, blob_store):
    engine = make_engine(max_size_bytes=8)
    pending = engine.begin_upload()
    pending.write(b"1234")
    pending.write(b"5678")
    assert (blob_store.root / pending.stored_name).exists()

    with pytest.raises(FileTooLarge):
        pending.write(b"9")
    pending.abort()
    pending.abort()
    assert blob_store.list_names() == []
    with pytest.raises(RuntimeError):
        pending.write(b"x")


def test_pending_upload_finish_validates_fields(make_engine, blob_store, repository):
    engine = make_engine(clock=_clock)
    pending = engine.begin_upload()
    pending.write(b"payload")
    with pytest.raises(InvalidDownloadLimit):
        pending.finish(filename="a.txt", mime="text/plain", owner_id="o", max_downloads="+5")
    assert blob_store.list_names() == []

    pending = engine.begin_upload()
    pending.write(b"payload")
    record = pending.finish(filename="a.txt", mime=None, owner_id="o", max_downloads="5")
    assert record.mime == "application/octet-stream"
    assert repository.get_by_id(record.id).max_downloads == 5
    assert blob_store.list_names() == [record.stored_name]
