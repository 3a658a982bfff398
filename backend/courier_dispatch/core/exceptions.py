"""
Standardized exception handling for API-first design.

Provides consistent error responses across all endpoints with:
- Unique error codes for client-side handling
- Request tracking via request_id
- Detailed error messages with context
- HTTP status code alignment
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    """Standardized error response format."""
    code: str
    message: str
    status_code: int
    timestamp: str
    request_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Wrapper for error responses."""
    error: ErrorDetail


# =============================================================================
# Base Exception Classes
# =============================================================================

class AppException(Exception):
    """Base exception for all application errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message or self.message
        self.details = details
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert exception to standardized error response."""
        return ErrorResponse(
            error=ErrorDetail(
                code=self.error_code,
                message=self.message,
                status_code=self.status_code,
                timestamp=datetime.utcnow().isoformat() + "Z",
                request_id=request_id,
                details=self.details,
                retryable=self.retryable,
            )
        )


# =============================================================================
# Client Errors (4xx)
# =============================================================================

class ValidationException(AppException):
    """Invalid input data."""
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    message = "Invalid input data"


class NotFoundException(AppException):
    """Resource not found."""
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class ConflictException(AppException):
    """Resource conflict (duplicate, state conflict)."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"
    message = "Resource conflict"


# =============================================================================
# Assignment Exceptions
# =============================================================================

class AssignmentNotFoundException(NotFoundException):
    """No assignment exists for the order."""
    error_code = "ASSIGNMENT_NOT_FOUND"
    message = "Assignment not found"

    def __init__(self, order_id: str):
        super().__init__(
            message=f"Assignment for order '{order_id}' not found",
            details={"order_id": order_id}
        )


class DuplicateAssignmentException(ConflictException):
    """An assignment already exists for the order."""
    error_code = "DUPLICATE_ASSIGNMENT"

    def __init__(self, order_id: str):
        super().__init__(
            message=f"Assignment for order '{order_id}' already exists",
            details={"order_id": order_id}
        )


class InvalidTransitionException(ConflictException):
    """
    State transition rejected by the assignment state machine.

    Raised when the conditional update did not match: wrong partner,
    wrong current status, or a terminal assignment. Nothing was written.
    """
    error_code = "INVALID_TRANSITION"
    message = "Assignment state transition not allowed"

    def __init__(
        self,
        order_id: str,
        transition: str,
        current_status: Optional[str] = None,
        partner_id: Optional[str] = None,
    ):
        details: Dict[str, Any] = {"order_id": order_id, "transition": transition}
        if current_status is not None:
            details["current_status"] = current_status
        if partner_id is not None:
            details["partner_id"] = partner_id
        super().__init__(
            message=f"Cannot {transition} assignment for order '{order_id}'"
            + (f" in status '{current_status}'" if current_status else ""),
            details=details,
        )
        self.order_id = order_id
        self.transition = transition
        self.current_status = current_status


class AssignmentExhaustedException(AppException):
    """Attempt budget spent without a successful placement."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "ASSIGNMENT_EXHAUSTED"
    message = "No delivery partner could be assigned within the attempt budget"

    def __init__(self, order_id: str, attempts: int):
        super().__init__(
            details={"order_id": order_id, "attempts": attempts},
        )


class NoCandidatesException(AppException):
    """No eligible partner right now. Retryable."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "NO_CANDIDATES"
    message = "No eligible delivery partners available right now"
    retryable = True

    def __init__(self, order_id: str, radius_km: float):
        super().__init__(
            details={"order_id": order_id, "radius_km": radius_km},
        )


# =============================================================================
# Dependency Exceptions (5xx)
# =============================================================================

class DependencyException(AppException):
    """GeoIndex or store unavailable."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "DEPENDENCY_UNAVAILABLE"
    message = "A required service is unavailable"
    retryable = True

    def __init__(self, dependency: str, reason: Optional[str] = None):
        super().__init__(
            message=f"{dependency} unavailable" + (f": {reason}" if reason else ""),
            details={"dependency": dependency},
        )
        self.dependency = dependency


class ConfigurationException(AppException):
    """Configuration error - should fail at startup."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "CONFIGURATION_ERROR"
    message = "Application configuration error"


# =============================================================================
# Exception Handler Registration
# =============================================================================

def get_request_id(request: Request) -> str:
    """Extract or generate request ID."""
    return getattr(request.state, "request_id", None) or str(uuid4())


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle all application exceptions with standardized format."""
    request_id = get_request_id(request)
    response = exc.to_response(request_id=request_id)

    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(),
        headers={"X-Request-ID": request_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = get_request_id(request)

    logger.exception(f"Unhandled exception: {exc}", extra={"request_id": request_id})

    error = ErrorResponse(
        error=ErrorDetail(
            code="INTERNAL_ERROR",
            message="An unexpected error occurred",
            status_code=500,
            timestamp=datetime.utcnow().isoformat() + "Z",
            request_id=request_id,
        )
    )

    return JSONResponse(
        status_code=500,
        content=error.model_dump(),
        headers={"X-Request-ID": request_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
