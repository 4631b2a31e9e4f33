"""Backdoor routes for end-to-end tests.

Mounted by ``ephemera.main`` only when ENABLE_TEST_ENDPOINTS is set and the
deployment is not production.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body
from pydantic import BaseModel, Field

from ephemera.api import routes
from ephemera.core.exceptions import NotFound

router = APIRouter(prefix="/api/test-helper", include_in_schema=False)


class UpdateFileRequest(BaseModel):
    id: str
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    download_count: Optional[int] = Field(default=None, alias="downloadCount", ge=0)


class CleanupOrphansRequest(BaseModel):
    keep: list[str] = []


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/update-file")
def update_file(payload: UpdateFileRequest):
    fields = {}
    if "expires_at" in payload.model_fields_set:
        fields["expires_at"] = _naive_utc(payload.expires_at)
    if payload.download_count is not None:
        fields["download_count"] = payload.download_count
    record = routes.repository.force_update(payload.id, **fields)
    if record is None:
        raise NotFound()
    return {
        "ok": True,
        "record": {
            "id": record.id,
            "expiresAt": routes._iso(record.expires_at),
            "downloadCount": record.download_count,
            "maxDownloads": record.max_downloads,
        },
    }


@router.get("/list-files")
def list_files():
    return {
        "meta": sorted(routes.repository.list_stored_names()),
        "disk": routes.blob_store.list_names(),
    }


@router.post("/cleanup-orphans")
def cleanup_orphans(payload: Optional[CleanupOrphansRequest] = Body(None)):
    keep = payload.keep if payload else []
    removed = routes.reaper.reap_orphans(grace_seconds=0, keep=keep)
    return {"removed": removed}
