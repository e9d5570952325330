"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger("fleet_tracking.errors")


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class LocationValidationError(AppException):
    """Raised when a fix or query parameter is out of range or malformed."""

    def __init__(self, field: str, constraint: str, value: Any = None):
        self.field = field
        self.constraint = constraint
        super().__init__(
            message=f"Invalid {field}: {constraint}",
            error_code="ERR_VALIDATION_LOCATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"field": field, "constraint": constraint, "value": value}
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class BatchTooLargeError(AppException):
    """Raised when a bulk ingestion exceeds the configured item count."""

    def __init__(self, size: int, max_items: int):
        super().__init__(
            message=f"Batch of {size} items exceeds the maximum of {max_items}",
            error_code="ERR_BATCH_TOO_LARGE",
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            details={"size": size, "max_items": max_items}
        )


class SpatialQueryDegraded(AppException):
    """
    Raised when the spatial index cannot answer a query.

    Never reaches the client: proximity queries catch it and serve
    the flagged fallback result instead.
    """

    def __init__(self, reason: str):
        super().__init__(
            message=f"Spatial index unavailable: {reason}",
            error_code="ERR_SPATIAL_DEGRADED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"reason": reason}
        )


class RetentionSweepError(AppException):
    """Raised when a purge fails partway. Already-swept records stay committed."""

    def __init__(self, operation: str, processed: int, reason: str):
        self.processed = processed
        super().__init__(
            message=f"Retention sweep '{operation}' failed after {processed} records: {reason}",
            error_code="ERR_RETENTION_SWEEP",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"operation": operation, "processed": processed}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        413: "ERR_PAYLOAD_TOO_LARGE",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
