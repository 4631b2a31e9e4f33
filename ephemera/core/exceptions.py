from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("ephemera")


class ShareError(Exception):
    """Base for every failure the lifecycle engine reports to a caller."""

    status_code = 400
    code = "error"
    detail = "Request failed"

    def __init__(self, detail: str | None = None) -> None:
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


# Validation: bad input shape, never retried.
class ValidationFailed(ShareError):
    code = "invalid_request"


class FileTooLarge(ValidationFailed):
    status_code = 413
    code = "file_too_large"
    detail = "file too large"


class EmptyFile(ValidationFailed):
    code = "empty_file"
    detail = "empty file"


class InvalidDownloadLimit(ValidationFailed):
    code = "invalid_download_limit"
    detail = "maxDownloads must be a positive integer"


class PasswordTooLong(ValidationFailed):
    code = "password_too_long"
    detail = "password too long"


class PasswordPolicyViolation(ValidationFailed):
    code = "password_required"
    detail = "password required"


class MimeNotAllowed(ValidationFailed):
    code = "mime_not_allowed"
    detail = "mime not allowed"


class MalformedForm(ValidationFailed):
    code = "invalid_form"
    detail = "malformed form"


class MissingFile(ValidationFailed):
    code = "missing_file"
    detail = "no file uploaded"


# Authorization
class AccessDenied(ShareError):
    status_code = 401
    code = "unauthorized"


class Unauthorized(AccessDenied):
    detail = "admin password required"


class PasswordRequired(AccessDenied):
    code = "password_required"
    detail = "password required"


class InvalidPassword(AccessDenied):
    status_code = 403
    code = "invalid_password"
    detail = "invalid password"


# Resource state: terminal for the caller.
class ResourceGone(ShareError):
    status_code = 410


class NotFound(ResourceGone):
    status_code = 404
    code = "not_found"
    detail = "not found"


class Expired(ResourceGone):
    code = "expired"
    detail = "expired"


class LimitReached(ResourceGone):
    code = "limit_reached"
    detail = "download limit reached"


# Server-side faults
class ServerFault(ShareError):
    status_code = 500
    code = "internal_error"
    detail = "internal error"


class BlobMissing(ServerFault):
    code = "file_missing"
    detail = "file missing"


class ServerMisconfigured(ServerFault):
    code = "server_misconfigured"
    detail = "server misconfiguration: admin password not set"


class StoreUnavailable(ServerFault):
    status_code = 503
    code = "store_unavailable"
    detail = "metadata store unavailable"


class Conflict(ShareError):
    status_code = 409
    code = "conflict"
    detail = "record already exists"


class BlobNotFound(ShareError):
    status_code = 404
    code = "blob_not_found"
    detail = "blob not found"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ShareError)
    async def share_error_handler(request: Request, exc: ShareError):
        if exc.status_code >= 500:
            logger.error(
                "event=request_failed path=%s error=%s detail=%s",
                request.url.path,
                exc.code,
                exc.detail,
            )
            # Server faults never leak their internals to the client.
            return JSONResponse(
                {"error": exc.code, "detail": type(exc).detail},
                status_code=exc.status_code,
            )
        return JSONResponse({"error": exc.code, "detail": exc.detail}, status_code=exc.status_code)
