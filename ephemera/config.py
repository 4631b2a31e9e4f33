import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


UPLOAD_DIR = os.getenv(
    "UPLOAD_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "storage"))
)
DB_URL = os.getenv("DB_URL", "sqlite:///./ephemera.db")
DB_CONNECT_ARGS = {"check_same_thread": False, "timeout": 30} if DB_URL.startswith("sqlite") else {}

# Metadata backend: "sql" (SQLModel over DB_URL) or "redis" (hashes under REDIS_URL)
METADATA_BACKEND = os.getenv("METADATA_BACKEND", "sql").lower()
REDIS_URL = os.getenv("REDIS_URL", "")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "ephemera")

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()

# Upload policy
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024)))
REQUIRE_FILE_PASSWORDS = _flag("REQUIRE_FILE_PASSWORDS")
ADMIN_ONLY_UPLOADS = _flag("ADMIN_ONLY_UPLOADS")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD") or None
ALLOWED_MIME_REGEX = os.getenv("ALLOWED_MIME_REGEX", "")
FILE_ID_LENGTH = max(6, min(32, int(os.getenv("FILE_ID_LENGTH", "10"))))
BCRYPT_ROUNDS = max(4, min(31, int(os.getenv("BCRYPT_ROUNDS", "12"))))

# Download policy
HIDE_ENUMERATION = _flag("HIDE_ENUMERATION")
RECENT_UPLOADS_LIMIT = int(os.getenv("RECENT_UPLOADS_LIMIT", "25"))

# Rate limiting
UPLOAD_RATE_LIMIT = int(os.getenv("UPLOAD_RATE_LIMIT", "30"))
UPLOAD_RATE_WINDOW_SECONDS = float(os.getenv("UPLOAD_RATE_WINDOW_SECONDS", "60"))
DOWNLOAD_RATE_LIMIT = int(os.getenv("DOWNLOAD_RATE_LIMIT", "120"))
DOWNLOAD_RATE_WINDOW_SECONDS = float(os.getenv("DOWNLOAD_RATE_WINDOW_SECONDS", "60"))
RATE_LIMIT_SWEEP_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "60"))
TRUST_PROXY_HEADERS = _flag("TRUST_PROXY_HEADERS")

# Reaper
ENABLE_CLEANER = _flag("ENABLE_CLEANER", "true")
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600"))
CLEANUP_TOKEN = os.getenv("CLEANUP_TOKEN") or None
CLEANUP_BATCH_LIMIT = int(os.getenv("CLEANUP_BATCH_LIMIT", "5000"))
RETAIN_EXHAUSTED_RECORDS = _flag("RETAIN_EXHAUSTED_RECORDS")
RECONCILE_ORPHANS = _flag("RECONCILE_ORPHANS", "true")
ORPHAN_GRACE_SECONDS = int(os.getenv("ORPHAN_GRACE_SECONDS", "3600"))

# Session cookie scoping the "recent uploads" view
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "psid")
SESSION_COOKIE_SECURE = _flag("SESSION_COOKIE_SECURE", "true" if ENVIRONMENT == "production" else "false")
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 30

# Test-only backdoor routes; never mounted when ENVIRONMENT=production
ENABLE_TEST_ENDPOINTS = _flag("ENABLE_TEST_ENDPOINTS")
