# WORKFLOW: Structured logging middleware for request/response monitoring.
# Used by: All API endpoints, operational monitoring, debugging
# Functions:
# 1. _log_request() - Log incoming request details (method, path, query, body for actions)
# 2. _log_response() - Log response details (status, timing, content type)
# 3. _log_error() - Log error details with context
#
# Logging flow: Request -> Bind request id -> Log request -> Process -> Log response/error
# Every structlog event emitted while handling the request carries the request id.

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
import time
import uuid
import structlog
from typing import Callable
import json

logger = structlog.get_logger()

REDACTED_HEADERS = {"authorization", "cookie", "x-api-key"}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        await self._log_request(request)

        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            await self._log_response(request, response, process_time)
            response.headers["x-request-id"] = request_id
            return response

        except Exception as e:
            process_time = time.time() - start_time
            await self._log_error(request, e, process_time)
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    async def _log_request(self, request: Request):
        """Log incoming request details."""
        body = None
        if request.method in ["POST", "PUT", "PATCH"]:
            raw = await request.body()
            if raw:
                try:
                    body = json.loads(raw.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    body = raw.decode(errors="replace")[:1000]

        headers = {
            name: ("***" if name.lower() in REDACTED_HEADERS else value)
            for name, value in request.headers.items()
        }
        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            query_params=dict(request.query_params),
            headers=headers,
            body=body,
            client_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent")
        )

    async def _log_response(self, request: Request, response: Response, process_time: float):
        """Log response details."""
        logger.info(
            "Response sent",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
            content_length=response.headers.get("content-length"),
            content_type=response.headers.get("content-type")
        )

    async def _log_error(self, request: Request, error: Exception, process_time: float):
        """Log error details."""
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error_type=type(error).__name__,
            error_message=str(error),
            process_time_ms=round(process_time * 1000, 2)
        )
