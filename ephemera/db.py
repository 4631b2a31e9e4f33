import logging

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool
from sqlmodel import SQLModel, create_engine

from ephemera.config import DB_CONNECT_ARGS, DB_URL
from ephemera.models import StoredFile

logger = logging.getLogger("ephemera.db")


def create_db_engine(url: str = DB_URL, connect_args: dict | None = None) -> Engine:
    if connect_args is None:
        connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    db_engine = create_engine(
        url,
        connect_args=connect_args,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,   # Recycle connections after 1 hour
        echo=False,
    )
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _sqlite_pragmas)
    return db_engine


def _sqlite_pragmas(dbapi_connection, connection_record):  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


engine = create_db_engine(DB_URL, DB_CONNECT_ARGS)


def init_db(bind: Engine | None = None) -> None:
    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    ensure_schema_compatibility(bind)


# Columns added after the first release, with the DDL that back-fills them.
_LATE_COLUMNS = {
    "owner_id": "VARCHAR NOT NULL DEFAULT 'public'",
    "blob_reaped": "BOOLEAN NOT NULL DEFAULT FALSE",
}


def ensure_schema_compatibility(bind: Engine | None = None) -> None:
    """Add columns missing from tables created by older releases."""
    bind = bind or engine
    table = StoredFile.__tablename__
    with bind.connect() as conn:
        try:
            if bind.dialect.name == "sqlite":
                result = conn.execute(text(f"PRAGMA table_info({table})")).fetchall()
                column_names = [row[1] for row in result]  # Second column in PRAGMA is column name
            else:
                result = conn.execute(
                    text(
                        "SELECT column_name FROM information_schema.columns "
                        "WHERE table_name = :table"
                    ),
                    {"table": table},
                ).fetchall()
                column_names = [row[0] for row in result]

            for column, ddl in _LATE_COLUMNS.items():
                if column not in column_names:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                    logger.info("event=schema_migrated table=%s column=%s", table, column)

            conn.commit()
        except OperationalError as e:
            logger.warning("Could not check or migrate database schema: %s", e)


def ensure_connection(bind: Engine | None = None) -> bool:
    """
    Verify that the database connection is alive.
    This is useful for long-running processes that might encounter stale connections.
    """
    bind = bind or engine
    try:
        with bind.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
