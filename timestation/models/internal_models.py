"""Internal data models for the time station fingerprint service."""

import base64
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# The device merges exactly this many samples into one template
ENROLLMENT_CAPTURES = 3

VERIFICATION_METHOD = "FINGERPRINT"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationAction(str, Enum):
    """Workforce actions that require a fingerprint match."""

    CLOCK_IN = "clock_in"
    CLOCK_OUT = "clock_out"
    AUTHORIZE_LEAVE = "authorize_leave"


@dataclass(eq=False)
class CaptureSample:
    """One raw capture from the scanner, base64 encoded. Never persisted."""

    data: str
    size: Optional[int] = None
    captured_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Reject empty samples."""
        if not isinstance(self.data, str) or not self.data:
            raise ValueError("Capture sample data must be a non-empty base64 string")

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)


@dataclass
class EnrollmentTemplate:
    """The durable merged template for one subject."""

    subject_id: str
    template_data: str
    quality: int = 100
    finger_index: int = 0
    enrolled_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate quality range after initialization."""
        if not 0 <= self.quality <= 100:
            raise ValueError(f"Quality must be between 0 and 100, got {self.quality}")


@dataclass
class Subject:
    """Employee record as returned by the record store lookup."""

    subject_id: str
    first_name: str = ""
    last_name: str = ""
    status: str = "active"
    fingerprint_enrolled: bool = False
    department: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status not in ("inactive", "terminated")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class DeviceHealth:
    """Scanner status reported by the device service health endpoint."""

    connected: bool
    mock_mode: bool = False
    device_opened: bool = False
    enrolled_count: int = 0
    initialized: bool = False
    checked_at: datetime = field(default_factory=utcnow)


@dataclass
class MatchResult:
    """Outcome of a 1:1 comparison."""

    matched: bool
    score: Optional[float] = None


@dataclass
class IdentifyResult:
    """Outcome of a 1:N identification."""

    identified: bool
    subject_id: Optional[str] = None
    score: Optional[float] = None


@dataclass
class LeaveRequest:
    """Leave request details authorized by fingerprint."""

    leave_type: str
    start_date: date
    end_date: date
    reason: str = ""

    def __post_init__(self):
        """Validate date ordering after initialization."""
        if self.end_date < self.start_date:
            raise ValueError("Leave end date must not be before start date")


@dataclass
class EventRecord:
    """Result of recording an attendance event or a leave submission."""

    subject_id: str
    action: VerificationAction
    timestamp: datetime
    verification_method: str = VERIFICATION_METHOD
    record_id: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
