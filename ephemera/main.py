import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ephemera.api import routes
from ephemera.cleaner import start_cleaner, stop_cleaner
from ephemera.config import (
    ADMIN_ONLY_UPLOADS,
    ADMIN_PASSWORD,
    CLEANUP_INTERVAL_SECONDS,
    CORS_ORIGINS,
    ENABLE_CLEANER,
    ENABLE_TEST_ENDPOINTS,
    ENVIRONMENT,
    LOG_LEVEL,
    METADATA_BACKEND,
    RATE_LIMIT_SWEEP_SECONDS,
)
from ephemera.core.exceptions import register_exception_handlers
from ephemera.db import init_db

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("ephemera")


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_cleaner(
        routes.reaper if ENABLE_CLEANER else None,
        CLEANUP_INTERVAL_SECONDS,
        limiters=[routes.upload_limiter, routes.download_limiter],
        limiter_sweep_seconds=RATE_LIMIT_SWEEP_SECONDS,
    )
    try:
        yield
    finally:
        stop_cleaner()


app = FastAPI(title="Ephemera", version="1.0.0", lifespan=lifespan)

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

if METADATA_BACKEND == "sql":
    init_db()

if ADMIN_ONLY_UPLOADS and not ADMIN_PASSWORD:
    logger.error(
        "Misconfiguration: ADMIN_ONLY_UPLOADS=true but ADMIN_PASSWORD is not set; every upload will fail."
    )

app.include_router(routes.router)

if ENABLE_TEST_ENDPOINTS:
    if ENVIRONMENT == "production":
        logger.error("ENABLE_TEST_ENDPOINTS ignored: test helpers are never mounted in production.")
    else:
        from ephemera.api.testing import router as testing_router

        logger.warning("Test helper endpoints are mounted under /api/test-helper.")
        app.include_router(testing_router)

register_exception_handlers(app)
