"""
Maps classified service errors onto HTTP responses.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ticketflow.core.exceptions import (
    Conflict,
    InvalidSignature,
    InvalidState,
    NotFound,
    ServiceError,
    TooManyRequests,
    Unauthorized,
    UpstreamFailure,
    ValidationFailed,
)
from ticketflow.core.logging import get_logger

logger = get_logger(__name__)

STATUS_CODES = {
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    Conflict: status.HTTP_409_CONFLICT,
    NotFound: status.HTTP_404_NOT_FOUND,
    Unauthorized: status.HTTP_401_UNAUTHORIZED,
    TooManyRequests: status.HTTP_429_TOO_MANY_REQUESTS,
    InvalidState: status.HTTP_409_CONFLICT,
    InvalidSignature: status.HTTP_400_BAD_REQUEST,
    UpstreamFailure: status.HTTP_502_BAD_GATEWAY,
}


def status_code_for(exc: ServiceError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = status_code_for(exc)
    body = {
        "error": exc.code,
        "message": exc.message,
        "retryable": exc.retryable,
    }
    reason = getattr(exc, "reason", None)
    if reason:
        body["reason"] = reason

    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    if status_code >= 500:
        logger.error("service_error", error=exc.code, status_code=status_code, message=exc.message)
    else:
        logger.info("service_error", error=exc.code, status_code=status_code)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
