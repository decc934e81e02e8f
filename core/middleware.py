"""
Application Middleware for the Challenge Engagement API.

Cross-cutting request handling applied to every HTTP request.

Key Middleware Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request
  (or reuses the caller's `X-Correlation-ID` / `X-Request-ID`) so all log
  lines of one request can be grouped.
- `ErrorHandlingMiddleware`: Turns exceptions that escape a route into
  standardized JSON error responses. Business-rule violations normally come
  back as failed `Outcome`s from the command bus and never reach it.
- `PerformanceMiddleware`: Logs request start and end, adds an
  `X-Process-Time` header and flags slow requests.

Architectural Design:
- Layered Processing Pipeline: `CorrelationMiddleware` is added last so it
  runs first and the correlation ID is set before anything else logs.
- Starlette's `BaseHTTPMiddleware`: each component is a small
  `BaseHTTPMiddleware` subclass with a single responsibility.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .exceptions import EngagementAPIException
from .logging_config import set_correlation_id

logger = logging.getLogger("core.middleware")

SLOW_REQUEST_SECONDS = 1.0


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for centralized error handling"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = getattr(request.state, "correlation_id", None)
        try:
            return await call_next(request)

        except EngagementAPIException as e:
            logger.error(
                f"Application error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "error_code": e.error_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return create_error_response(
                type(e).__name__,
                e.error_code,
                e.message,
                status_code=e.status_code,
                correlation_id=correlation_id,
                details=e.details,
            )

        except Exception as e:
            logger.error(
                f"Unexpected error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
                exc_info=True,
            )
            return create_error_response(
                "InternalServerError",
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                status_code=500,
                correlation_id=correlation_id,
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for request timing and logging"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        logger.debug(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            },
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            },
        )

        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "process_time_ms": round(process_time * 1000, 2),
                },
            )

        return response


def create_error_response(
    error_type: str,
    error_code: str,
    message: str,
    status_code: int = 400,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create standardized error response"""
    error_data = {"error": {"type": error_type, "code": error_code, "message": message}}

    if correlation_id:
        error_data["error"]["correlation_id"] = correlation_id

    if details:
        error_data["error"]["details"] = details

    return JSONResponse(status_code=status_code, content=error_data)
