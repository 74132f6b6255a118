"""
Error taxonomy for fingerprint enrollment and verification.

Device and record store failures are normalized into these exceptions at the
client layer, so the state machines never look at HTTP status codes. Every
error carries a user-facing message and the recovery action a UI should offer.
"""

from enum import Enum
from typing import Optional


class RecoveryAction(str, Enum):
    """The single recovery action offered to the user after a failure."""

    NONE = "none"
    RETRY_CAPTURE = "retry_capture"
    RESTART_ENROLLMENT = "restart_enrollment"
    RETRY_PERSIST = "retry_persist"
    RETRY_VERIFICATION = "retry_verification"
    RETRY_COMMIT = "retry_commit"
    CHECK_DEVICE = "check_device"
    ENROLL_FIRST = "enroll_first"


class FingerprintError(Exception):
    """Base exception for fingerprint workflow errors."""

    code = "fingerprint_error"
    default_message = "Fingerprint operation failed"
    recovery = RecoveryAction.RETRY_CAPTURE
    retryable = True

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# Device-side failures

class DeviceUnavailable(FingerprintError):
    """Raised when the fingerprint device service cannot be reached or the scanner is not connected."""

    code = "device_unavailable"
    default_message = "Fingerprint scanner not available. Check that the scanner service is running."
    recovery = RecoveryAction.CHECK_DEVICE
    retryable = False


class CaptureTimeout(FingerprintError):
    """Raised when no finger was captured within the capture window."""

    code = "capture_timeout"
    default_message = "Capture timeout - no finger detected. Try again."


class CaptureFailed(FingerprintError):
    """Raised when the device reports a placement or quality problem."""

    code = "capture_failed"
    default_message = "Capture failed. Place finger firmly on the scanner."


class DeviceBusy(CaptureFailed):
    """Raised when the device is still serving an earlier capture."""

    code = "device_busy"
    default_message = "Scanner is busy. Wait a moment and try again."


class MergeFailed(FingerprintError):
    """Raised when the captured samples cannot be merged into one template."""

    code = "merge_failed"
    default_message = "Failed to merge fingerprint templates. Start again from the first capture."
    recovery = RecoveryAction.RESTART_ENROLLMENT


class MatcherError(FingerprintError):
    """Raised when the device refuses a match request (not an identity mismatch)."""

    code = "matcher_error"
    default_message = "The scanner could not compare fingerprints. Try again."
    recovery = RecoveryAction.RETRY_VERIFICATION


# Record store failures

class StoreUnavailable(FingerprintError):
    """Raised on network or server errors talking to the record store."""

    code = "store_unavailable"
    default_message = "Records service unavailable. Try again shortly."
    recovery = RecoveryAction.RETRY_VERIFICATION

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotEnrolled(FingerprintError):
    """Raised when no fingerprint template exists for the subject."""

    code = "not_enrolled"
    default_message = "No fingerprint registered. Please enroll your fingerprint first."
    recovery = RecoveryAction.ENROLL_FIRST
    retryable = False


class SubjectNotFound(FingerprintError):
    """Raised when the record store has no such employee."""

    code = "subject_not_found"
    default_message = "Employee not found. Please check your ID."
    recovery = RecoveryAction.NONE
    retryable = False


class SubjectInactive(FingerprintError):
    """Raised when an inactive or terminated employee tries to use the kiosk."""

    code = "subject_inactive"
    recovery = RecoveryAction.NONE
    retryable = False

    def __init__(self, status: str):
        super().__init__(f"Your account is {status}. Please contact HR.")
        self.status = status


# Verification outcomes

class FingerprintMismatch(FingerprintError):
    """Raised when the captured fingerprint does not belong to the subject."""

    code = "fingerprint_mismatch"
    default_message = "Fingerprint does not match. Please try again."
    recovery = RecoveryAction.RETRY_VERIFICATION

    def __init__(self, message: Optional[str] = None, score: Optional[float] = None):
        super().__init__(message)
        self.score = score


class CommitFailed(FingerprintError):
    """Raised when identity was verified but the resulting record could not be written."""

    code = "commit_failed"
    default_message = "Fingerprint verified but the record could not be saved. Retry saving."
    recovery = RecoveryAction.RETRY_COMMIT

    def __init__(self, message: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


# Session management

class SessionActive(FingerprintError):
    """Raised when a session for the subject is already in progress."""

    code = "session_active"
    default_message = "A fingerprint session is already in progress for this employee."
    recovery = RecoveryAction.NONE
    retryable = False


class SessionNotFound(FingerprintError):
    """Raised when no session exists for the subject."""

    code = "session_not_found"
    default_message = "No fingerprint session found for this employee."
    recovery = RecoveryAction.NONE
    retryable = False


class SessionCancelled(FingerprintError):
    """Raised when a session was closed while a device call was pending."""

    code = "session_cancelled"
    default_message = "The fingerprint session was closed."
    recovery = RecoveryAction.NONE
    retryable = False


class InvalidTransition(FingerprintError):
    """Raised when an event is not valid in the session's current step."""

    code = "invalid_transition"
    recovery = RecoveryAction.NONE
    retryable = False

    def __init__(self, step: str, event: str):
        super().__init__(f"Event '{event}' is not allowed in step '{step}'")
        self.step = step
        self.event = event
