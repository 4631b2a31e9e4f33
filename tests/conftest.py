import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from ephemera.core.security import build_password_context  # noqa: E402
from ephemera.db import create_db_engine, init_db  # noqa: E402
from ephemera.repository.sql import SqlFileRepository  # noqa: E402
from ephemera.services.lifecycle import LifecycleEngine, UploadPolicy  # noqa: E402
from ephemera.storage import LocalBlobStore  # noqa: E402

# Modules that read configuration at import time, in dependency order.
MODULE_ORDER = [
    "ephemera.config",
    "ephemera.core.metrics",
    "ephemera.core.security",
    "ephemera.db",
    "ephemera.api.routes",
    "ephemera.api.testing",
    "ephemera.main",
]


def _prepare_client(tmp_path, monkeypatch, **overrides):
    env = {
        "UPLOAD_DIR": str(tmp_path / "blobs"),
        "DB_URL": f"sqlite:///{tmp_path / 'test.db'}",
        "METADATA_BACKEND": "sql",
        "ENABLE_CLEANER": "false",
        "BCRYPT_ROUNDS": "4",
        "MAX_FILE_SIZE_BYTES": str(1024 * 1024),
        "UPLOAD_RATE_LIMIT": "1000",
        "DOWNLOAD_RATE_LIMIT": "1000",
        "REQUIRE_FILE_PASSWORDS": "false",
        "ADMIN_ONLY_UPLOADS": "false",
        "ADMIN_PASSWORD": "",
        "ALLOWED_MIME_REGEX": "",
        "HIDE_ENUMERATION": "false",
        "CLEANUP_TOKEN": "",
        "RETAIN_EXHAUSTED_RECORDS": "false",
        "TRUST_PROXY_HEADERS": "false",
        "ENABLE_TEST_ENDPOINTS": "true",
        "ENVIRONMENT": "test",
    }
    env.update({key: str(value) for key, value in overrides.items()})
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    # Reload modules so configuration changes take effect cleanly.
    for module_name in MODULE_ORDER:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["ephemera.main"]
    test_client = TestClient(main.app)
    test_client.upload_dir = tmp_path / "blobs"  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def prepare_client(tmp_path, monkeypatch):
    def _factory(**overrides):
        return _prepare_client(tmp_path, monkeypatch, **overrides)

    return _factory


@pytest.fixture
def client(prepare_client):
    with prepare_client() as c:
        yield c


@pytest.fixture
def sql_engine(tmp_path):
    db_engine = create_db_engine(f"sqlite:///{tmp_path / 'meta.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def repository(sql_engine):
    return SqlFileRepository(sql_engine)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def passwords():
    return build_password_context(rounds=4)


@pytest.fixture
def make_engine(repository, blob_store, passwords):
    def _make(clock=None, **policy):
        policy.setdefault("max_size_bytes", 1024)
        kwargs = {"clock": clock} if clock is not None else {}
        return LifecycleEngine(repository, blob_store, UploadPolicy(**policy), passwords, **kwargs)

    return _make
