"""Data models for the time station service."""

from .api_models import (
    ClockRequest,
    DeviceStatusResponse,
    EnrollmentStartRequest,
    EnrollmentStatusResponse,
    ErrorResponse,
    HealthResponse,
    LeaveRequestBody,
    VerificationResponse,
)
from .internal_models import (
    CaptureSample,
    DeviceHealth,
    EnrollmentTemplate,
    EventRecord,
    LeaveRequest,
    MatchResult,
    Subject,
    VerificationAction,
)

__all__ = [
    "ClockRequest",
    "DeviceStatusResponse",
    "EnrollmentStartRequest",
    "EnrollmentStatusResponse",
    "ErrorResponse",
    "HealthResponse",
    "LeaveRequestBody",
    "VerificationResponse",
    "CaptureSample",
    "DeviceHealth",
    "EnrollmentTemplate",
    "EventRecord",
    "LeaveRequest",
    "MatchResult",
    "Subject",
    "VerificationAction",
]
