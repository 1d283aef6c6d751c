"""
Request middleware for logging, timing, request ID tracking and client info.
"""

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog

from ticketflow.core.logging import get_logger
from ticketflow.services.auth_service import ClientInfo

logger = get_logger(__name__)

UNKNOWN = "unknown"


def resolve_client_info(request: Request) -> ClientInfo:
    """
    Client IP and User-Agent for session and audit records.

    The first X-Forwarded-For hop wins over the socket peer so requests
    behind a proxy record the caller, not the proxy.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    ip_address = forwarded.split(",")[0].strip()
    if not ip_address:
        ip_address = request.headers.get("x-real-ip", "").strip()
    if not ip_address and request.client:
        ip_address = request.client.host
    user_agent = request.headers.get("user-agent", "").strip()
    return ClientInfo(
        ip_address=ip_address[:45] or UNKNOWN,
        user_agent=user_agent[:500] or UNKNOWN,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Assigns a unique request ID to each request
    2. Resolves client info onto request.state
    3. Logs request method, path, status code, and duration
    4. Binds request context to structlog for correlation
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.perf_counter()
        client_info = resolve_client_info(request)
        request.state.client_info = client_info

        # Bind request context for all downstream log calls
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=client_info.ip_address,
        )

        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=duration_ms,
            )

            # Add headers for observability
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms}ms"

            return response

        except Exception as e:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            logger.error(
                "request_failed",
                error=str(e),
                duration_ms=duration_ms,
            )
            raise
