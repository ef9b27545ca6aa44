# app/transport/middleware.py
"""
Request middleware: correlation id, access log with timing, last-resort
500 handler. Typed dispatch errors never reach here; they are mapped to
responses by the exception handlers in http_app.
"""
import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import observe_histogram

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# client-supplied ids end up in every log line for the request
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def resolve_request_id(supplied: Optional[str]) -> str:
    """Keep a well-formed client id, otherwise mint one."""
    if supplied and _REQUEST_ID_PATTERN.match(supplied):
        return supplied
    return uuid.uuid4().hex


def _caller(request: Request) -> dict:
    # actor_id is set by the auth dependency, absent on public routes
    return {
        "request_id": getattr(request.state, "request_id", "unknown"),
        "actor_id": getattr(request.state, "actor_id", None),
    }


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access line per request plus a latency histogram by method and status class."""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            caller = _caller(request)
            log_ctx = LogContext(logger, **caller)
            line = (
                f"{request.method} {request.url.path} "
                f"status={status_code} duration={duration_ms:.2f}ms"
            )
            extra = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": duration_ms,
            }
            if status_code >= 500:
                log_ctx.error(line, extra=extra)
            else:
                log_ctx.info(line, extra=extra)
            observe_histogram(
                "http_request_duration_ms",
                duration_ms,
                method=request.method,
                status=f"{status_code // 100}xx",
            )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn anything unhandled into an opaque 500 carrying the request id."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            caller = _caller(request)
            logger.exception(
                f"Unhandled {exc.__class__.__name__} on {request.method} {request.url.path}",
                extra=caller,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": caller["request_id"]},
            )
