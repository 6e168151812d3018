"""
FastAPI exception handlers for the ledger API.

WHY: Every error leaves the API in one JSON shape
(``error``, ``message``, ``status_code``, ``details``) so that clients can
branch on ``error`` (e.g. ``InsufficientCapacityError`` vs
``ExternalProvisioningError``) without parsing messages.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from quota_ledger.core.exceptions import AppException, ExternalServiceError

logger = logging.getLogger(__name__)


def _error_body(error: str, message: str, status_code: int, details=None) -> dict:
    return {
        "error": error,
        "message": message,
        "status_code": status_code,
        "details": details,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle AppException and its subclasses.

    External failures are logged at ERROR since an operator or the
    reconciliation job has to follow up; everything else is the caller's
    problem and is logged at INFO.

    Args:
        request: The FastAPI request object
        exc: The custom exception instance

    Returns:
        JSONResponse with error details
    """
    log = logger.error if isinstance(exc, ExternalServiceError) else logger.info
    log(
        f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={"status_code": exc.status_code, "path": request.url.path},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic request validation errors with field-level detail.

    Args:
        request: The FastAPI request object
        exc: The Pydantic validation error

    Returns:
        JSONResponse with one entry per invalid field
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=400,
        content=_error_body("ValidationError", "Request validation failed", 400, {"errors": errors}),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render routing-level HTTP errors (404, 405) in the common shape."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body("HTTPException", exc.detail, exc.status_code),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: Logs the full traceback but returns a generic message so internal
    details never reach the client (OWASP A04).
    """
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}",
        extra={"path": request.url.path, "method": request.method},
    )

    return JSONResponse(
        status_code=500,
        content=_error_body("InternalServerError", "An unexpected error occurred", 500),
    )
