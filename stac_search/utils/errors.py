"""
Error handling utilities for the STAC search service.

This module provides the search error taxonomy and the handlers that turn
those errors into consistent JSON error responses.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from stac_search.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Enumeration of error codes for consistent error responses."""

    # Server errors (1xxx)
    SERVER_ERROR = "1000"

    # Request errors (3xxx)
    MALFORMED_REQUEST = "3000"
    VALIDATION_ERROR = "3001"

    # Capability errors (4xxx)
    UNSUPPORTED_CAPABILITY = "4000"
    TRANSLATION_ERROR = "4001"

    # Backend errors (5xxx)
    BACKEND_UNAVAILABLE = "5000"
    BACKEND_ERROR = "5001"

    # Data errors (6xxx)
    DATA_ERROR = "6000"


class ErrorDetail(BaseModel):
    """Model representing detailed error information."""

    location: Optional[str] = None
    param: Optional[str] = None
    value: Optional[Any] = None
    message: str


class ErrorResponse(BaseModel):
    """Model representing a standardized error response."""

    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    request_id: Optional[str] = None


class SearchError(Exception):
    """Base exception class for search errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[List[ErrorDetail]] = None,
    ):
        """
        Initialize a new search error.

        Args:
            code: Error code
            message: Error message
            status_code: HTTP status code to return
            details: Optional list of error details
        """
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or []
        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Build the error response body for this error."""
        return ErrorResponse(
            code=self.code.value,
            message=self.message,
            details=self.details or None,
            request_id=request_id,
        )


class MalformedRequest(SearchError):
    """Invalid bbox, datetime, limit or filter, or conflicting spatial filters."""

    def __init__(
        self,
        message: str = "Malformed request",
        details: Optional[List[ErrorDetail]] = None,
    ):
        """Initialize a new malformed request error."""
        super().__init__(
            code=ErrorCode.MALFORMED_REQUEST,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class UnsupportedCapability(SearchError):
    """A filter feature or property path a backend cannot compile."""

    def __init__(
        self,
        message: str = "Unsupported capability",
        details: Optional[List[ErrorDetail]] = None,
    ):
        """Initialize a new unsupported capability error."""
        super().__init__(
            code=ErrorCode.UNSUPPORTED_CAPABILITY,
            message=message,
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            details=details,
        )


class TranslationError(SearchError):
    """A valid filter whose paths cannot be mapped onto the backend schema."""

    def __init__(
        self,
        message: str = "Translation error",
        details: Optional[List[ErrorDetail]] = None,
    ):
        """Initialize a new translation error."""
        super().__init__(
            code=ErrorCode.TRANSLATION_ERROR,
            message=message,
            status_code=422,
            details=details,
        )


class BackendUnavailable(SearchError):
    """Pool exhaustion, timeout or transient network failure."""

    def __init__(
        self,
        message: str = "Backend unavailable",
        details: Optional[List[ErrorDetail]] = None,
    ):
        """Initialize a new backend unavailable error."""
        super().__init__(
            code=ErrorCode.BACKEND_UNAVAILABLE,
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class DataError(SearchError):
    """A stored item whose geometry or timestamp cannot be parsed."""

    def __init__(
        self,
        message: str = "Data error",
        details: Optional[List[ErrorDetail]] = None,
        item_id: Optional[str] = None,
    ):
        """Initialize a new data error."""
        super().__init__(
            code=ErrorCode.DATA_ERROR,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.item_id = item_id


class BackendError(SearchError):
    """An error reported by the backend engine, wrapped as-is."""

    def __init__(
        self,
        message: str = "Backend error",
        details: Optional[List[ErrorDetail]] = None,
        backend_code: Optional[str] = None,
    ):
        """Initialize a new backend error."""
        super().__init__(
            code=ErrorCode.BACKEND_ERROR,
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )
        self.backend_code = backend_code


def setup_error_handlers(app: FastAPI) -> None:
    """
    Configure error handlers for a FastAPI application serving searches.

    Args:
        app: FastAPI application
    """

    @app.exception_handler(SearchError)
    async def search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
        """Handle search errors and return standardized error responses."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            f"Search error: {exc.code.value} - {exc.message}",
            extra={
                "request_id": request_id,
                "status_code": exc.status_code,
                "error_code": exc.code.value,
                "error_details": [detail.model_dump() for detail in exc.details],
            },
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(request_id).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle FastAPI request validation errors."""
        details = []
        for error in exc.errors():
            location = ".".join(str(loc) for loc in error.get("loc", []))
            details.append(
                ErrorDetail(
                    location=location,
                    message=error.get("msg", "Validation error"),
                    param=str(error["loc"][-1]) if error.get("loc") else None,
                )
            )

        logger.error(
            "Request validation error",
            extra={"request_id": getattr(request.state, "request_id", None)},
        )

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                code=ErrorCode.VALIDATION_ERROR.value,
                message="Request validation error",
                details=details,
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unhandled exceptions and return standardized error responses."""
        logger.exception(
            f"Unhandled exception: {str(exc)}",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "exception_type": type(exc).__name__,
            },
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                code=ErrorCode.SERVER_ERROR.value,
                message="An unexpected error occurred",
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )


def error_details_from_pydantic(errors: List[Dict[str, Any]]) -> List[ErrorDetail]:
    """
    Convert pydantic validation errors into error details.

    Args:
        errors: Output of ``ValidationError.errors()``

    Returns:
        One error detail per validation error
    """
    details = []
    for error in errors:
        loc = error.get("loc") or ()
        details.append(
            ErrorDetail(
                location=".".join(str(part) for part in loc) or None,
                param=str(loc[0]) if loc else None,
                message=error.get("msg", "Invalid value"),
            )
        )
    return details
