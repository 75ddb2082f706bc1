"""
Centralized Error Handling for LedgerMesh

This module provides:
- The application exception hierarchy and its error codes
- One JSON error envelope for every failure: {"detail": {code, message, timestamp, ...}}
- FastAPI exception handlers and a request failure logging middleware

Client errors (4xx) are logged at WARNING, server and upstream errors at ERROR.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("ledgermesh.errors")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ErrorCode(str, Enum):
    """Machine readable codes carried in every error response"""

    # Request / filter validation (400, 422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_FILTERS = "INVALID_FILTERS"

    # Missing ledger data (404, 409)
    NOT_FOUND = "NOT_FOUND"
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    PERIOD_NOT_FOUND = "PERIOD_NOT_FOUND"
    FX_RATE_NOT_FOUND = "FX_RATE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"

    # PDF rendering service (502, 503, 504)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PDF_RENDER_TIMEOUT = "PDF_RENDER_TIMEOUT"
    PDF_RENDER_INVALID_RESPONSE = "PDF_RENDER_INVALID_RESPONSE"
    PDF_RENDER_TOO_SMALL = "PDF_RENDER_TOO_SMALL"
    PDF_EXPORT_DISABLED = "PDF_EXPORT_DISABLED"

    # Storage (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    MEMBER_DECODE_ERROR = "MEMBER_DECODE_ERROR"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = _utc_timestamp()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Body of the `detail` member of the error envelope"""
        body: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


class ValidationException(AppException):
    """Invalid caller input (422 unless the caller asks for another status)"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=details,
            field=field,
        )


class NotFoundException(AppException):
    """A group, period or quote the request depends on does not exist"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, int]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            message = f"{resource_type} not found"
            if resource_id is not None:
                message = f"{resource_type} '{resource_id}' not found"
        details: Dict[str, Any] = {"resource_type": resource_type}
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class ExternalServiceException(AppException):
    """A downstream service (the PDF renderer) failed"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        merged["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=merged,
            original_error=original_error,
        )


# ============================================================================
# Responses & handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Standard error envelope for errors that are not AppExceptions"""
    detail: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": _utc_timestamp(),
    }
    if field:
        detail["field"] = field
    if details:
        detail["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _request_context(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    context = _request_context(request)
    context["code"] = exc.code.value
    if exc.status_code >= 500:
        logger.error(
            f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}",
            extra=context,
            exc_info=exc.original_error,
        )
    else:
        logger.warning(
            f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}",
            extra=context,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


_HTTP_STATUS_CODES = {
    400: ErrorCode.INVALID_INPUT,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_INPUT,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    503: ErrorCode.EXTERNAL_SERVICE_ERROR,
}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {message}", extra=_request_context(request))
    return create_error_response(
        code=_HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body / query validation failures, one entry per offending field"""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Request validation failed on {request.url.path}: {len(errors)} error(s)",
        extra=_request_context(request),
    )
    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Ledger storage failures; driver messages never reach the client"""
    code = ErrorCode.DATABASE_ERROR
    message = "A database error occurred"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        code = ErrorCode.DATA_INTEGRITY_ERROR
        message = "Data integrity constraint violated"
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, OperationalError):
        code = ErrorCode.CONNECTION_ERROR
        message = "Database unavailable"
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, DataError):
        message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"{type(exc).__name__} on {request.method} {request.url.path}",
        extra=_request_context(request),
        exc_info=exc,
    )
    return create_error_response(code=code, message=message, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        extra=_request_context(request),
        exc_info=exc,
    )
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# ============================================================================
# Middleware
# ============================================================================

class ErrorTrackingMiddleware:
    """ASGI middleware logging any request that escapes the handlers"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            await self.app(scope, receive, send)
        except Exception as exc:
            logger.error(
                f"Request failed: {scope.get('method')} {scope.get('path', 'unknown')}",
                extra={
                    "path": scope.get("path"),
                    "method": scope.get("method"),
                    "exception_type": type(exc).__name__,
                },
                exc_info=True,
            )
            raise
