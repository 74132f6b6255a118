"""
Custom middleware for the time station service.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from timestation.observability import record_http_metrics

logger = structlog.get_logger()

CORRELATION_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request/response logging with correlation ID support.
    """

    def __init__(self, app, exclude_paths: set = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or {"/healthz", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        correlation_id = request.headers.get(CORRELATION_HEADER) or f"req_{uuid.uuid4().hex[:12]}"
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        start_time = time.time()
        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("User-Agent", "unknown")
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                process_time_ms=round((time.time() - start_time) * 1000, 2)
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "correlation_id": correlation_id,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                },
                headers={CORRELATION_HEADER: correlation_id}
            )

        logger.info(
            "Request completed",
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2)
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to responses.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers.update({
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store"
        })

        return response


class RequestMetrics:
    """In-process request counters served by /metrics."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.request_count = 0
        self.error_count = 0
        self.total_processing_time = 0.0

    def observe(self, status_code: int, processing_time: float) -> None:
        self.request_count += 1
        self.total_processing_time += processing_time
        if status_code >= 400:
            self.error_count += 1

    def snapshot(self) -> Dict[str, Any]:
        avg_processing_time = (
            self.total_processing_time / self.request_count
            if self.request_count > 0 else 0
        )
        return {
            "total_requests": self.request_count,
            "error_count": self.error_count,
            "error_rate": self.error_count / self.request_count if self.request_count > 0 else 0,
            "avg_processing_time_ms": round(avg_processing_time * 1000, 2)
        }


request_metrics = RequestMetrics()


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect basic metrics about requests.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            processing_time = time.time() - start_time
            request_metrics.observe(500, processing_time)
            record_http_metrics(request.method, request.url.path, 500, processing_time)
            raise

        processing_time = time.time() - start_time
        request_metrics.observe(response.status_code, processing_time)
        record_http_metrics(request.method, request.url.path, response.status_code, processing_time)
        return response


def get_metrics() -> Dict[str, Any]:
    """Get current application metrics."""
    return request_metrics.snapshot()
