"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class BusinessValidationError(AppException):
    """Raised when input passes schema validation but fails a business rule."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
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


class ConflictError(AppException):
    """Raised when the requested thing already exists or was already done."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class TerminalStateError(AppException):
    """Raised when a transition is attempted on a cancelled or completed purchase."""

    def __init__(self, purchase_id: Any, current: str, target: str):
        super().__init__(
            message=f"Purchase {purchase_id} is {current}; no further status changes are allowed",
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"purchase_id": purchase_id, "current": current, "requested": target}
        )


class InvalidTransitionError(AppException):
    """Raised when the state machine does not allow current -> target."""

    def __init__(self, purchase_id: Any, current: str, target: str):
        super().__init__(
            message=f"Purchase {purchase_id} cannot move from {current} to {target}",
            error_code="ERR_STATE_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"purchase_id": purchase_id, "current": current, "requested": target}
        )


class ConcurrentModificationError(AppException):
    """Raised when the purchase row changed between read and compare-and-set update."""

    def __init__(self, purchase_id: Any, expected: str):
        super().__init__(
            message=f"Purchase {purchase_id} was modified concurrently",
            error_code="ERR_STATE_003",
            status_code=status.HTTP_409_CONFLICT,
            details={"purchase_id": purchase_id, "expected_status": expected}
        )


class CommissionSnapshotImmutableError(AppException):
    """Raised when code tries to overwrite a purchase's commission snapshot."""

    def __init__(self, field: str):
        super().__init__(
            message=f"Commission field '{field}' is write-once",
            error_code="ERR_STATE_004",
            status_code=status.HTTP_409_CONFLICT,
            details={"field": field}
        )


class PaymentDeclinedError(AppException):
    """Raised when the processor declines a charge for a known reason."""

    def __init__(self, message: str, decline_code: str = None):
        super().__init__(
            message=message,
            error_code="ERR_PAYMENT_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"decline_code": decline_code} if decline_code else {}
        )


class PaymentProcessorError(AppException):
    """Raised when the payment processor fails for a reason we cannot map."""

    def __init__(self, message: str = "Payment processor request failed", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAYMENT_002",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class ReconciliationError(AppException):
    """Raised when a webhook event cannot be applied and must be redelivered."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_WEBHOOK_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error_code)
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
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    errors = exc.errors()
    message = "Validation error"
    if errors:
        message = errors[0].get("msg", message)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": message,
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in errors
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
