"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``SchedulingClientError`` → 400 Bad Request (code from the exception)
- ``ValueError`` → 400 Bad Request
- ``ProviderAuthError`` → 400 Bad Request
- ``ProviderError`` → 502 Bad Gateway
- ``SchedulingTimeoutError`` → 504 Gateway Timeout
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from plantracker.api.models import ErrorDetail, ErrorResponse
from plantracker.core.logging import reset_request_id, set_request_id
from plantracker.scheduling.errors import (
    ProviderAuthError,
    ProviderError,
    SchedulingClientError,
    SchedulingTimeoutError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_client_error(request: Request, exc: SchedulingClientError) -> JSONResponse:
    logger.info("Scheduling request rejected: code=%s message=%s", exc.code, exc)
    return _error(400, exc.code, str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_provider_auth_error(request: Request, exc: ProviderAuthError) -> JSONResponse:
    logger.warning("Calendar authorization failed: status_code=%s", exc.status_code)
    return _error(400, "AUTHORIZATION_FAILED", sanitize_error_message(str(exc)))


async def _handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    logger.warning("Calendar provider failure on %s: %s", request.url.path, exc)
    return _error(502, "PROVIDER_ERROR", sanitize_error_message(str(exc)))


async def _handle_timeout(request: Request, exc: SchedulingTimeoutError) -> JSONResponse:
    return _error(504, "SCHEDULING_TIMEOUT", str(exc))


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context and echo it in the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers and the request-scoped middlewares.

    Domain exceptions go through ``add_exception_handler``; the catch-all is a
    middleware so that no exception reaches Starlette's plain-text 500.
    """
    app.add_exception_handler(SchedulingClientError, _handle_client_error)  # type: ignore[arg-type]
    app.add_exception_handler(SchedulingTimeoutError, _handle_timeout)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderAuthError, _handle_provider_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
    app.add_middleware(RequestIdMiddleware)
