from __future__ import annotations

import logging

from ephemera.repository.base import FileRepository

logger = logging.getLogger("ephemera.repository")


def build_repository(backend: str | None = None) -> FileRepository:
    """Select the metadata backend once, at startup."""
    from ephemera import config

    backend = (backend or config.METADATA_BACKEND).lower()
    if backend == "redis":
        if not config.REDIS_URL:
            raise RuntimeError("METADATA_BACKEND=redis requires REDIS_URL to be set")
        from ephemera.repository.redis_store import RedisFileRepository

        logger.info("event=repository_selected backend=redis prefix=%s", config.REDIS_KEY_PREFIX)
        return RedisFileRepository.from_url(config.REDIS_URL, prefix=config.REDIS_KEY_PREFIX)
    if backend == "sql":
        from ephemera.db import engine
        from ephemera.repository.sql import SqlFileRepository

        logger.info("event=repository_selected backend=sql")
        return SqlFileRepository(engine)
    raise RuntimeError(f"Unknown METADATA_BACKEND {backend!r}; expected 'sql' or 'redis'")
