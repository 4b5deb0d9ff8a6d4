"""Global exception handlers for consistent error responses.

- ShortLinkError subclasses → their own HTTP status, with Retry-After when set
- Unexpected Exception → generic 500 (safety net)
- All responses carry the request id for tracing

Response body::

    {"error": {"code": "...", "message": "...", "request_id": "...", "retryable": false}}
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shortlinks.errors import ShortLinkError

__all__ = ["setup_exception_handlers"]

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


async def shortlink_error_handler(request: Request, exc: ShortLinkError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "request_id": _request_id(request),
                "retryable": exc.retryable,
            }
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred",
                "request_id": _request_id(request),
                "retryable": False,
            }
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShortLinkError, shortlink_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
