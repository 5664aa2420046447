"""Domain exception hierarchy and FastAPI exception handlers.

Every error leaving the API is rendered as ``{"error": ..., "details": ...}``
with the matching status code, whether it originates as a FulQrunError,
an HTTPException raised by a route, or a request validation failure.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger(__name__)


class FulQrunError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(FulQrunError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(FulQrunError):
    status_code = status.HTTP_409_CONFLICT


class ValidationFailedError(FulQrunError):
    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(FulQrunError):
    status_code = status.HTTP_403_FORBIDDEN


class IntegrationError(FulQrunError):
    """A third-party integration call failed after retries."""

    status_code = status.HTTP_502_BAD_GATEWAY


def error_body(error: str, details: Any = None) -> dict[str, Any]:
    """Build the standard error payload."""
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return body


# ── Handlers ─────────────────────────────────────────────────────────────────


async def _fulqrun_error_handler(request: Request, exc: FulQrunError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api.domain_error", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes may raise HTTPException(detail={"error": ..., "details": ...})
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_body(str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body("Validation failed", details),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api.unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the {error, details} handlers to an application."""
    app.add_exception_handler(FulQrunError, _fulqrun_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
