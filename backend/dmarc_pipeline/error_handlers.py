"""
Error handling for the API

Provides:
- API exception classes
- Exception handlers for FastAPI
- Standardized error responses
"""
import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from dmarc_pipeline.exceptions import TransientExternalError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base class for API exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR"
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class NotFoundError(APIError):
    """Resource not found"""

    def __init__(self, message: str = "Resource not found", resource_type: str = "resource"):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND"
        )
        self.resource_type = resource_type


def _error_response(request: Request, status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "path": request.url.path, **extra}
    )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle custom API exceptions"""
    logger.error(
        f"API error: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path
        }
    )
    return _error_response(request, exc.status_code, exc.error_code, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors"""
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}", extra={"path": request.url.path})
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        details=jsonable_errors(errors),
    )


def jsonable_errors(errors):
    """Strip non-serialisable context (e.g. exception instances) from pydantic errors"""
    return [{k: v for k, v in error.items() if k in ("loc", "msg", "type")} for error in errors]


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database errors"""
    logger.error(
        f"Database error: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )

    if isinstance(exc, IntegrityError):
        return _error_response(
            request, status.HTTP_409_CONFLICT,
            "INTEGRITY_ERROR", "Database integrity constraint violated"
        )
    if isinstance(exc, OperationalError):
        return _error_response(
            request, status.HTTP_503_SERVICE_UNAVAILABLE,
            "DATABASE_UNAVAILABLE", "Database is currently unavailable"
        )
    return _error_response(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR,
        "DATABASE_ERROR", "An unexpected database error occurred"
    )


async def transient_error_handler(request: Request, exc: TransientExternalError) -> JSONResponse:
    """Queue or external service unavailable"""
    logger.warning(f"Upstream unavailable: {exc}", extra={"path": request.url.path})
    return _error_response(
        request, status.HTTP_503_SERVICE_UNAVAILABLE, "UPSTREAM_UNAVAILABLE", str(exc)
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )
    return _error_response(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR", "An unexpected error occurred"
    )


def register_error_handlers(app):
    """Register all error handlers with the FastAPI app"""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)
    app.add_exception_handler(TransientExternalError, transient_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    logger.info("Error handlers registered")
