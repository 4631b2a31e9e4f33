from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from ephemera.api.multipart import FORM_OVERHEAD_BYTES, StreamingForm
from ephemera.cleaner import Reaper
from ephemera.config import (
    CLEANUP_BATCH_LIMIT,
    CLEANUP_TOKEN,
    DOWNLOAD_RATE_LIMIT,
    DOWNLOAD_RATE_WINDOW_SECONDS,
    FILE_ID_LENGTH,
    HIDE_ENUMERATION,
    ORPHAN_GRACE_SECONDS,
    RECENT_UPLOADS_LIMIT,
    RECONCILE_ORPHANS,
    RETAIN_EXHAUSTED_RECORDS,
    SESSION_COOKIE_MAX_AGE,
    SESSION_COOKIE_NAME,
    SESSION_COOKIE_SECURE,
    TRUST_PROXY_HEADERS,
    UPLOAD_DIR,
    UPLOAD_RATE_LIMIT,
    UPLOAD_RATE_WINDOW_SECONDS,
)
from ephemera.core.exceptions import AccessDenied, FileTooLarge, MissingFile, NotFound, ResourceGone
from ephemera.core.metrics import metrics
from ephemera.core.rate_limit import RateLimiter, RateResult
from ephemera.core.security import bearer_token, pwd_context, secrets_match
from ephemera.repository.factory import build_repository
from ephemera.services.lifecycle import LifecycleEngine, UploadPolicy
from ephemera.storage import LocalBlobStore

router = APIRouter()

logger = logging.getLogger("ephemera")

blob_store = LocalBlobStore(UPLOAD_DIR)
repository = build_repository()
lifecycle = LifecycleEngine(
    repository,
    blob_store,
    UploadPolicy.from_config(),
    pwd_context,
    metrics=metrics,
    id_length=FILE_ID_LENGTH,
)
reaper = Reaper(
    repository,
    blob_store,
    batch_limit=CLEANUP_BATCH_LIMIT,
    retain_exhausted=RETAIN_EXHAUSTED_RECORDS,
    reconcile_orphans=RECONCILE_ORPHANS,
    orphan_grace_seconds=ORPHAN_GRACE_SECONDS,
    metrics=metrics,
)
upload_limiter = RateLimiter(UPLOAD_RATE_LIMIT, UPLOAD_RATE_WINDOW_SECONDS)
download_limiter = RateLimiter(DOWNLOAD_RATE_LIMIT, DOWNLOAD_RATE_WINDOW_SECONDS)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _client_key(request: Request) -> str:
    if TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _rate_limit(limiter: RateLimiter, scope: str):
    def enforce_rate_limit(request: Request, response: Response) -> RateResult:
        client = _client_key(request)
        result = limiter.consume(f"{scope}:{client}")
        if not result.allowed:
            retry_after = result.retry_after()
            headers = {**result.headers(), "Retry-After": str(retry_after)}
            logger.warning("event=rate_limited scope=%s client=%s", scope, client)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers=headers,
            )
        response.headers.update(result.headers())
        return result

    return enforce_rate_limit


enforce_upload_rate_limit = _rate_limit(upload_limiter, "upl")
enforce_download_rate_limit = _rate_limit(download_limiter, "dl")


def get_owner_id(request: Request, response: Response) -> str:
    """Opaque per-browser id scoping the recent-uploads view; issued on first contact."""
    owner_id = request.cookies.get(SESSION_COOKIE_NAME)
    if not owner_id:
        owner_id = secrets.token_urlsafe(18)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            owner_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=SESSION_COOKIE_SECURE,
            path="/",
        )
    return owner_id


async def get_download_password(request: Request) -> Optional[str]:
    """Password from an optional JSON body; an unreadable body means no password."""
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        logger.debug("event=download_body_ignored reason=invalid_json")
        return None
    password = payload.get("password") if isinstance(payload, dict) else None
    return password if isinstance(password, str) else None


def _declared_length(request: Request) -> Optional[int]:
    try:
        return int(request.headers.get("content-length", ""))
    except ValueError:
        return None


@router.post("/api/upload")
async def upload(
    request: Request,
    owner_id: str = Depends(get_owner_id),
    _rate: RateResult = Depends(enforce_upload_rate_limit),
):
    limit = lifecycle.policy.max_size_bytes
    declared = _declared_length(request)
    if declared is not None and declared > limit + FORM_OVERHEAD_BYTES:
        metrics.record_rejected_upload()
        logger.warning(
            "event=upload_rejected reason=file_too_large content_length=%s owner_id=%s",
            declared,
            owner_id,
        )
        raise FileTooLarge(f"file too large (max {limit} bytes)")

    pending = await run_in_threadpool(lifecycle.begin_upload)
    form: Optional[StreamingForm] = None
    try:
        form = StreamingForm(request.headers.get("content-type"), pending.write)
        async for chunk in request.stream():
            await run_in_threadpool(form.feed, chunk)
        form.close()
        if not form.has_file or not form.filename:
            raise MissingFile()
    except Exception as exc:
        filename = form.filename if form is not None else None
        await run_in_threadpool(pending.abort, exc, filename=filename, owner_id=owner_id)
        raise

    fields = form.fields
    record = await run_in_threadpool(
        pending.finish,
        filename=form.filename,
        mime=form.content_type,
        owner_id=owner_id,
        expires_in=fields.get("expiresIn"),
        max_downloads=fields.get("maxDownloads"),
        password=fields.get("downloadPassword"),
        admin_password=fields.get("adminPassword"),
    )
    return {
        "id": record.id,
        "url": f"/api/download/{record.id}",
        "expiresAt": _iso(record.expires_at),
    }


@router.post("/api/download/{file_id}")
def download(
    file_id: str,
    password: Optional[str] = Depends(get_download_password),
    rate: RateResult = Depends(enforce_download_rate_limit),
):
    try:
        handle = lifecycle.open_download(file_id, password)
    except (ResourceGone, AccessDenied) as exc:
        if HIDE_ENUMERATION:
            raise NotFound() from exc
        raise

    headers = {
        **rate.headers(),
        "Content-Length": str(handle.size),
        "Content-Disposition": f'attachment; filename="{handle.filename}"',
        "X-Content-Type-Options": "nosniff",
        "Cache-Control": "private, max-age=0, no-store",
        "Content-Security-Policy": "default-src 'none'",
    }
    return StreamingResponse(
        handle.iter_chunks(), media_type="application/octet-stream", headers=headers
    )


@router.get("/api/file/{file_id}/meta")
def file_meta(file_id: str):
    try:
        preview = lifecycle.peek(file_id)
    except ResourceGone as exc:
        if HIDE_ENUMERATION:
            raise NotFound() from exc
        raise
    return {
        "id": preview.id,
        "originalName": preview.original_name,
        "expiresAt": _iso(preview.expires_at),
        "requiresPassword": preview.requires_password,
    }


@router.get("/api/recent")
def recent(owner_id: str = Depends(get_owner_id)):
    items = lifecycle.recent(owner_id, RECENT_UPLOADS_LIMIT)
    logger.debug("event=recent_listed count=%d", len(items))
    return {
        "items": [
            {
                "id": item.id,
                "filename": item.filename,
                "size": item.size,
                "expiresAt": _iso(item.expires_at),
                "remainingDownloads": item.remaining_downloads,
            }
            for item in items
        ]
    }


@router.post("/api/cleanup")
def cleanup(authorization: Optional[str] = Header(None)):
    if CLEANUP_TOKEN and not secrets_match(bearer_token(authorization), CLEANUP_TOKEN):
        raise HTTPException(status_code=401, detail="unauthorized")
    report = reaper.sweep()
    return {
        "scanned": report.scanned,
        "blobsDeleted": report.blobs_deleted,
        "removed": report.records_deleted,
        "retainedExhausted": report.retained_exhausted,
        "orphansDeleted": report.orphans_deleted,
    }


@router.get("/metrics")
def metrics_snapshot():
    response = JSONResponse(metrics.snapshot())
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.get("/healthz")
def healthz():
    if not repository.ping():
        return JSONResponse({"status": "unavailable"}, status_code=503)
    return {"status": "ok"}
