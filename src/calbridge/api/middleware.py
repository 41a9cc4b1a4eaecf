"""API error handling — consistent error envelopes.

Registers FastAPI exception handlers that convert exceptions into
``{"error": {"code": "...", "message": "...", "details": ...}}`` responses.

Status code mapping:
- ``CalbridgeError`` subclasses → their ``status_code`` (429 adds ``Retry-After``)
- ``RequestValidationError`` → 400 ``VALIDATION_ERROR``
- ``HTTPException`` → its status code
- Any other ``Exception`` → 500 ``INTERNAL_ERROR``
"""

from __future__ import annotations

import logging
import math

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from calbridge.api.models import ErrorDetail, ErrorResponse
from calbridge.errors import CalbridgeError, InternalError, ProviderRateLimited, sanitize_message

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    503: "SERVICE_UNAVAILABLE",
}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def _handle_calbridge_error(request: Request, exc: CalbridgeError) -> JSONResponse:
    """Render a typed error with its own status code."""
    if isinstance(exc, InternalError):
        logger.error(
            "Internal error on %s %s: %s", request.method, request.url.path, exc.message
        )
        return _error_response(500, exc.code, InternalError.default_message)

    logger.info(
        "Request failed on %s %s: code=%s", request.method, request.url.path, exc.code
    )
    details: dict | None = None
    headers: dict[str, str] | None = None
    if isinstance(exc, ProviderRateLimited) and exc.retry_after is not None:
        retry_after = math.ceil(exc.retry_after)
        headers = {"Retry-After": str(retry_after)}
        details = {"retry_after": retry_after}
    return _error_response(exc.status_code, exc.code, exc.message, details=details, headers=headers)


async def _handle_request_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 for malformed request bodies or query parameters."""
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": sanitize_message(str(error.get("msg", ""))),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    logger.info("Validation error on %s %s", request.method, request.url.path)
    return _error_response(400, "VALIDATION_ERROR", "Invalid request", details={"errors": errors})


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(exc.status_code, code, message, headers=getattr(exc, "headers", None))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into the standard 500 envelope.

    Sits above the exception-handler layer so nothing escapes as a
    plain-text 500, and never echoes the exception text to the client.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalbridgeError, _handle_calbridge_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
