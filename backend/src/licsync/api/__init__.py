"""FastAPI routes for license-sync.

Provides common response models, error classes and exception handlers.
"""

from typing import Any
from uuid import UUID

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..errors import (
    ConsolidationError,
    LicenseNotFoundError,
    SyncError,
    SyncInProgressError,
)


# =========================
# Response Models
# =========================


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: str
    error_code: str
    details: list[ErrorDetail] | None = None


# =========================
# Exception Classes
# =========================


class APIError(HTTPException):
    """Base API error with structured response."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: list[ErrorDetail] | None = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, resource: str, identifier: str | UUID):
        super().__init__(
            status_code=404,
            error_code="NOT_FOUND",
            message=f"{resource} not found: {identifier}",
        )


class BadRequestError(APIError):
    """Request rejected before reaching the engine."""

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(
            status_code=400,
            error_code="BAD_REQUEST",
            message=message,
            details=details,
        )


# =========================
# Exception Handlers
# =========================


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            error_code=exc.error_code,
            details=exc.details,
        ).model_dump(),
        headers={"X-Error-Code": exc.error_code},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle generic HTTPException."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail),
            error_code="HTTP_ERROR",
        ).model_dump(),
    )


def _sync_error_status(exc: SyncError) -> tuple[int, str]:
    if isinstance(exc, SyncInProgressError):
        return 409, "SYNC_IN_PROGRESS"
    if isinstance(exc, LicenseNotFoundError):
        return 404, "NOT_FOUND"
    if isinstance(exc, ConsolidationError):
        return 400, "CONSOLIDATION_FAILED"
    if exc.fatal:
        return 503, exc.error_type
    return 500, exc.error_type


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    """Map engine errors to HTTP responses."""
    status_code, error_code = _sync_error_status(exc)
    details = None
    if isinstance(exc, SyncInProgressError) and exc.operation_id:
        details = [
            ErrorDetail(
                code="RUNNING_OPERATION",
                message="Operation currently running",
                details={"operationId": exc.operation_id},
            )
        ]
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=exc.message,
            error_code=error_code,
            details=details,
        ).model_dump(),
        headers={"X-Error-Code": error_code},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    from ..logging import get_logger

    logger = get_logger(__name__)
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="An unexpected error occurred",
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )


def register_exception_handlers(app):
    """Register exception handlers with the FastAPI app."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
