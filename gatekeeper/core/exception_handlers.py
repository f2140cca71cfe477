"""Global exception handlers for consistent error responses.

Design:
- AdmissionDeniedError -> 403/429 with rate headers, Retry-After and retryAfter
- AppError subclasses  -> status by type (400, 403, 503, 500)
- Unexpected Exception -> generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gatekeeper.core.errors import (
    AdmissionDeniedError,
    AppError,
    AuthenticationAppError,
    ConfigurationError,
    StoreUnavailableError,
)
from gatekeeper.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, StoreUnavailableError):
        return 503
    if isinstance(exc, ConfigurationError):
        return 500
    return 400


def _error_body(exc: AppError) -> dict:
    body = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        body["details"] = exc.details
    return body


async def admission_denied_handler(request: Request, exc: AdmissionDeniedError) -> JSONResponse:
    """Render an admission denial.

    The body carries ``retryAfter`` (seconds) next to the error object so
    clients that ignore headers can still back off.
    """
    content: dict = {"error": _error_body(exc)}
    if exc.retry_after is not None:
        content["retryAfter"] = exc.retry_after

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers or None,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - ValidationAppError / InvalidIdentityError -> 400 Bad Request
    - AuthenticationAppError -> 403 Forbidden
    - StoreUnavailableError -> 503 Service Unavailable
    - ConfigurationError -> 500 Internal Server Error
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=status_code,
        content={"error": _error_body(exc)},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic message
    so no implementation details reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Order matters: specific handlers registered before general fallback.

    Example:
        >>> from fastapi import FastAPI
        >>> from gatekeeper.core.exception_handlers import setup_exception_handlers
        >>> app = FastAPI()
        >>> setup_exception_handlers(app)
    """
    app.exception_handler(AdmissionDeniedError)(admission_denied_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
