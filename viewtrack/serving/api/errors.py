"""
Exception handlers rendering ``{"error": {"code", "message"}}``.
"""

import math

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from viewtrack.errors import Internal, RateLimited, ViewTrackingError

logger = structlog.get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ViewTrackingError)
    async def handle_view_tracking_error(request: Request, exc: ViewTrackingError) -> JSONResponse:
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
        error = Internal("Internal server error")
        return JSONResponse(error.to_dict(), status_code=error.status_code)
