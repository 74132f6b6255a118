"""Pydantic models for API requests and responses."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from timestation.models.internal_models import VerificationAction


def _strip_subject_id(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("subjectId must not be blank")
    return v


class EnrollmentStartRequest(BaseModel):
    """Request model for opening an enrollment session."""

    subjectId: str = Field(..., min_length=1, max_length=64, description="Employee id")

    @field_validator("subjectId")
    @classmethod
    def validate_subject_id(cls, v):
        return _strip_subject_id(v)


class ErrorDetail(BaseModel):
    code: str
    message: str


class EnrollmentStatusResponse(BaseModel):
    """Current state of an enrollment session."""

    sessionId: str
    subjectId: str
    step: str = Field(..., description="Current enrollment step")
    captureNumber: int = Field(..., description="Capture being awaited (1-3), 0 outside capturing")
    capturesRequired: int
    samplesCaptured: int
    attempt: int
    prompt: str = ""
    error: Optional[ErrorDetail] = None
    recovery: str = Field("none", description="The one recovery action to offer")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "sessionId": "4f9c2a3e-1b7d-4c5e-9f0a-2d8b6e1c3a57",
            "subjectId": "1001",
            "step": "awaiting_capture",
            "captureNumber": 2,
            "capturesRequired": 3,
            "samplesCaptured": 1,
            "attempt": 1,
            "prompt": "Lift finger, then place it again for capture 2 of 3",
            "error": None,
            "recovery": "none"
        }
    })


class ClockRequest(BaseModel):
    """Request model for clock-in / clock-out."""

    subjectId: str = Field(..., min_length=1, max_length=64)
    action: VerificationAction

    @field_validator("subjectId")
    @classmethod
    def validate_subject_id(cls, v):
        return _strip_subject_id(v)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        if v is VerificationAction.AUTHORIZE_LEAVE:
            raise ValueError("Use the leave endpoint to authorize leave")
        return v


class LeaveRequestBody(BaseModel):
    """Request model for fingerprint-authorized leave."""

    subjectId: str = Field(..., min_length=1, max_length=64)
    leaveType: str = Field(..., min_length=1, max_length=50)
    startDate: date
    endDate: date
    reason: str = Field("", max_length=500)

    @field_validator("subjectId")
    @classmethod
    def validate_subject_id(cls, v):
        return _strip_subject_id(v)

    @model_validator(mode="after")
    def validate_dates(self):
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        return self


class VerificationResponse(BaseModel):
    """Outcome of a verification attempt."""

    sessionId: str
    subjectId: str
    action: str
    success: bool
    step: str
    matched: bool = False
    score: Optional[float] = None
    recordId: Optional[str] = None
    verifiedAt: Optional[datetime] = None
    message: str = ""
    error: Optional[ErrorDetail] = None
    recovery: str = "none"

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "sessionId": "7a1e0c44-93b2-4d1f-8e55-0c6b2f9d1e20",
            "subjectId": "1001",
            "action": "clock_in",
            "success": True,
            "step": "succeeded",
            "matched": True,
            "score": 87.0,
            "recordId": "5521",
            "verifiedAt": "2024-01-01T08:00:00Z",
            "message": "Clock-in recorded",
            "error": None,
            "recovery": "none"
        }
    })


class DeviceStatusResponse(BaseModel):
    connected: bool
    mockMode: bool
    deviceOpened: bool
    enrolledCount: int
    initialized: bool
    busy: bool
    checkedAt: datetime


class DeviceActionResponse(BaseModel):
    success: bool
    message: str = ""


class SyncTemplatesResponse(BaseModel):
    loaded: int
    errors: int


class IdentifyResponse(BaseModel):
    identified: bool
    subjectId: Optional[str] = None
    score: Optional[float] = None


class EnrolledResponse(BaseModel):
    enrolled: List[str]
    count: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field("1.0.0", description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "device_unavailable",
            "message": "Fingerprint scanner not available. Check that the scanner service is running.",
            "correlation_id": "req_3f2a9b1c0d4e",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
