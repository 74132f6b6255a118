"""
Mapping from fingerprint errors to HTTP responses.
"""

from datetime import datetime, timezone
from typing import Dict, Type

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from timestation.errors import (
    CaptureTimeout,
    DeviceBusy,
    DeviceUnavailable,
    FingerprintError,
    InvalidTransition,
    NotEnrolled,
    SessionActive,
    SessionCancelled,
    SessionNotFound,
    StoreUnavailable,
    SubjectInactive,
    SubjectNotFound,
)
from timestation.models.api_models import ErrorResponse

logger = structlog.get_logger()

# Most specific class wins; lookup walks the exception's MRO
STATUS_CODES: Dict[Type[FingerprintError], int] = {
    SubjectNotFound: 404,
    SessionNotFound: 404,
    NotEnrolled: 404,
    SubjectInactive: 403,
    SessionActive: 409,
    SessionCancelled: 409,
    InvalidTransition: 409,
    DeviceBusy: 409,
    CaptureTimeout: 408,
    DeviceUnavailable: 503,
    StoreUnavailable: 503,
}

DEFAULT_STATUS = 422


def status_for(error: FingerprintError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return DEFAULT_STATUS


def correlation_id_for(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or request.headers.get("X-Request-ID", "unknown")


def create_error_response(
    error_type: str,
    message: str,
    correlation_id: str,
    status_code: int = 500
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error_type,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.now(timezone.utc)
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json")
    )


async def fingerprint_error_handler(request: Request, exc: FingerprintError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request rejected",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=status_code
    )
    return create_error_response(exc.code, exc.message, correlation_id_for(request), status_code)
