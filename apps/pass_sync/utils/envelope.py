import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.pass_sync.services.errors import PassSyncError

log = logging.getLogger("pass_sync.http")


def ok(data=None, meta=None, status: int = 200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data,
            "meta": meta or {},
        },
    )


def error(message: str, code: str = "error", status: int = 400, details=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "error": code,
            "message": message,
            "details": details or {},
        },
    )


def install_error_handlers(app: FastAPI) -> None:
    """Stable envelopes for every PassSyncError, no stack leaks."""

    @app.exception_handler(PassSyncError)
    async def _pass_sync_error(request: Request, exc: PassSyncError):
        if exc.status_code >= 500:
            log.error(f"[HTTP] {request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return error(exc.message, code=exc.code, status=exc.status_code, details=exc.details)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception(f"[HTTP] unhandled error on {request.method} {request.url.path}")
        return error("Internal server error", code="internal_error", status=500)
