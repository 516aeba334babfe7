"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``TodoStudioError`` subclasses use their own ``status_code`` and ``code``
- ``RequestValidationError`` (malformed body or query) maps to 400
- Any other ``Exception`` maps to 500 ``internal_error``
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from todo_studio.api.models import ErrorDetail, ErrorResponse
from todo_studio.errors import (
    ProviderError,
    RateLimitedError,
    TodoStudioError,
    ValidationError,
)
from todo_studio.models import format_validation_errors

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_domain_error(
    request: Request,
    exc: TodoStudioError,
) -> JSONResponse:
    if isinstance(exc, ProviderError):
        logger.warning(
            "Provider error on %s %s: %s (status=%s)",
            request.method,
            request.url.path,
            exc.message,
            exc.provider_status,
        )
    elif exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.info("%s: %s", type(exc).__name__, exc.message)

    response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 for malformed request bodies, paths or query strings."""
    message = format_validation_errors(exc.errors())
    logger.info("Validation error: %s", message)
    return _error_response(400, ValidationError.code, message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
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
            return _error_response(500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(TodoStudioError, _handle_domain_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError,
        _handle_request_validation,  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
