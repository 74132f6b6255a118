"""
Fingerprint verification for clock-in, clock-out and leave authorization.

A VerificationAttempt is a plain state machine with a single transition()
entry point; VerificationService performs the device and record store calls
and feeds their outcomes back as events. Calls are strictly sequential:

    Idle -> Fetching -> Capturing -> Matching -> Committing -> Succeeded

With fetch_before_capture disabled, Capturing comes before Fetching. Any step
can end in Failed. A failed commit can be retried without recapturing.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from timestation.clients.device_client import DeviceClient, get_device_client
from timestation.clients.record_store_client import RecordStoreClient, get_record_store_client
from timestation.config import settings
from timestation.errors import (
    CommitFailed,
    DeviceUnavailable,
    FingerprintError,
    FingerprintMismatch,
    InvalidTransition,
    NotEnrolled,
    RecoveryAction,
    SessionCancelled,
    SessionNotFound,
    SubjectInactive,
)
from timestation.models.internal_models import (
    CaptureSample,
    EventRecord,
    LeaveRequest,
    MatchResult,
    Subject,
    VerificationAction,
    utcnow,
)
from timestation.observability import record_verification_metrics, trace_function
from timestation.services.sessions import Session, SessionRegistry, get_session_registry, run_cancellable

logger = logging.getLogger(__name__)


class VerificationStep(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CAPTURING = "capturing"
    MATCHING = "matching"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VerificationEventType(str, Enum):
    START = "start"
    TEMPLATE_FETCHED = "template_fetched"
    FETCH_FAILED = "fetch_failed"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    MATCHED = "matched"
    MATCH_FAILED = "match_failed"
    COMMITTED = "committed"
    COMMIT_FAILED = "commit_failed"
    RETRY_COMMIT = "retry_commit"
    CANCEL = "cancel"


@dataclass
class VerificationEvent:
    type: VerificationEventType
    template: Optional[str] = None
    sample: Optional[CaptureSample] = None
    match: Optional[MatchResult] = None
    record: Optional[EventRecord] = None
    error: Optional[FingerprintError] = None


TERMINAL_STEPS = (VerificationStep.SUCCEEDED, VerificationStep.FAILED, VerificationStep.CANCELLED)
WORKING_STEPS = (
    VerificationStep.FETCHING,
    VerificationStep.CAPTURING,
    VerificationStep.MATCHING,
    VerificationStep.COMMITTING,
)


class VerificationAttempt(Session):
    """One verify-and-act cycle for a subject."""

    kind = "verification"

    def __init__(
        self,
        subject: Subject,
        action: VerificationAction,
        leave: Optional[LeaveRequest] = None,
        fetch_before_capture: bool = True
    ):
        super().__init__(subject.subject_id)
        if action is VerificationAction.AUTHORIZE_LEAVE and leave is None:
            raise ValueError("Leave authorization requires a leave request")
        self.subject = subject
        self.action = action
        self.leave = leave
        self.fetch_before_capture = fetch_before_capture

        self.step = VerificationStep.IDLE
        self.stored_template: Optional[str] = None
        self.captured_sample: Optional[CaptureSample] = None
        self.match: Optional[MatchResult] = None
        self.record: Optional[EventRecord] = None
        self.verified_at: Optional[datetime] = None
        self.last_error: Optional[FingerprintError] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    @property
    def matched(self) -> bool:
        return self.match is not None and self.match.matched

    @property
    def recovery(self) -> RecoveryAction:
        if self.step is VerificationStep.FAILED and self.last_error is not None:
            return self.last_error.recovery
        return RecoveryAction.NONE

    def transition(self, event: VerificationEvent) -> VerificationStep:
        """
        Apply an event and return the new step.

        Raises:
            InvalidTransition: The event is not valid in the current step
        """
        handler = _TRANSITIONS.get((self.step, event.type))
        if handler is None:
            if event.type is VerificationEventType.CANCEL and not self.is_terminal:
                handler = VerificationAttempt._on_cancel
            else:
                raise InvalidTransition(self.step.value, event.type.value)

        previous = self.step
        handler(self, event)
        logger.debug(f"Verification {self.session_id} for {self.subject_id}: {previous.value} -> {self.step.value} on {event.type.value}")
        return self.step

    def _fail(self, error: FingerprintError) -> None:
        self.last_error = error
        self.step = VerificationStep.FAILED

    def _on_start(self, event: VerificationEvent) -> None:
        if not self.subject.fingerprint_enrolled:
            self._fail(NotEnrolled())
            return
        self.step = VerificationStep.FETCHING if self.fetch_before_capture else VerificationStep.CAPTURING

    def _on_template_fetched(self, event: VerificationEvent) -> None:
        if not event.template:
            raise ValueError("template_fetched event requires a template")
        self.stored_template = event.template
        self.step = VerificationStep.CAPTURING if self.fetch_before_capture else VerificationStep.MATCHING

    def _on_captured(self, event: VerificationEvent) -> None:
        if event.sample is None:
            raise ValueError("captured event requires a sample")
        self.captured_sample = event.sample
        self.step = VerificationStep.MATCHING if self.fetch_before_capture else VerificationStep.FETCHING

    def _on_matched(self, event: VerificationEvent) -> None:
        if event.match is None:
            raise ValueError("matched event requires a match result")
        self.match = event.match
        if not event.match.matched:
            self._fail(FingerprintMismatch(score=event.match.score))
            return
        # Fixed once, so a replayed commit writes the same event
        self.verified_at = utcnow()
        self.step = VerificationStep.COMMITTING

    def _on_committed(self, event: VerificationEvent) -> None:
        self.record = event.record
        self.last_error = None
        self.step = VerificationStep.SUCCEEDED

    def _on_commit_failed(self, event: VerificationEvent) -> None:
        error = event.error
        if not isinstance(error, CommitFailed):
            error = CommitFailed(cause=error)
        self._fail(error)

    def _on_failure(self, event: VerificationEvent) -> None:
        self._fail(event.error or FingerprintError())

    def _on_retry_commit(self, event: VerificationEvent) -> None:
        if not isinstance(self.last_error, CommitFailed):
            raise InvalidTransition(self.step.value, event.type.value)
        self.last_error = None
        self.step = VerificationStep.COMMITTING

    def _on_cancel(self, event: VerificationEvent) -> None:
        self.cancelled = True
        self.step = VerificationStep.CANCELLED


_TRANSITIONS = {
    (VerificationStep.IDLE, VerificationEventType.START): VerificationAttempt._on_start,
    (VerificationStep.FETCHING, VerificationEventType.TEMPLATE_FETCHED): VerificationAttempt._on_template_fetched,
    (VerificationStep.FETCHING, VerificationEventType.FETCH_FAILED): VerificationAttempt._on_failure,
    (VerificationStep.CAPTURING, VerificationEventType.CAPTURED): VerificationAttempt._on_captured,
    (VerificationStep.CAPTURING, VerificationEventType.CAPTURE_FAILED): VerificationAttempt._on_failure,
    (VerificationStep.MATCHING, VerificationEventType.MATCHED): VerificationAttempt._on_matched,
    (VerificationStep.MATCHING, VerificationEventType.MATCH_FAILED): VerificationAttempt._on_failure,
    (VerificationStep.COMMITTING, VerificationEventType.COMMITTED): VerificationAttempt._on_committed,
    (VerificationStep.COMMITTING, VerificationEventType.COMMIT_FAILED): VerificationAttempt._on_commit_failed,
    (VerificationStep.FAILED, VerificationEventType.RETRY_COMMIT): VerificationAttempt._on_retry_commit,
}


class VerificationService:
    """
    Runs verification attempts against the device and the record store.

    Orchestrates template fetch, live capture, 1:1 matching and the resulting
    attendance record or leave submission for one subject at a time.
    """

    def __init__(
        self,
        device: Optional[DeviceClient] = None,
        store: Optional[RecordStoreClient] = None,
        registry: Optional[SessionRegistry] = None,
        fetch_before_capture: Optional[bool] = None
    ):
        """
        Initialize verification service.

        Args:
            device: Device client. If None, uses the global one.
            store: Record store client. If None, uses the global one.
            registry: Session registry shared with enrollment.
            fetch_before_capture: Fetch the stored template before capturing (default: settings)
        """
        self.device = device or get_device_client()
        self.store = store or get_record_store_client()
        self.registry = registry or get_session_registry()
        self.fetch_before_capture = (
            settings.fetch_before_capture if fetch_before_capture is None else fetch_before_capture
        )

    @trace_function("verification.verify")
    async def verify(
        self,
        subject: Subject,
        action: VerificationAction,
        leave: Optional[LeaveRequest] = None
    ) -> VerificationAttempt:
        """
        Run a complete verification attempt for a subject.

        Failures are reported through the returned attempt's step, last_error
        and recovery rather than raised.

        Args:
            subject: Subject from the record store lookup
            action: What the verified identity authorizes
            leave: Leave details, required for AUTHORIZE_LEAVE

        Returns:
            The finished attempt (Succeeded, Failed or Cancelled)

        Raises:
            SubjectInactive: The subject may not use the kiosk
            SessionActive: Another session is active for the subject
            SessionCancelled: The attempt was cancelled mid-call
        """
        if not subject.is_active:
            raise SubjectInactive(subject.status)

        attempt = VerificationAttempt(
            subject, action, leave=leave, fetch_before_capture=self.fetch_before_capture
        )
        self.registry.claim(attempt)
        logger.info(f"Starting {action.value} verification for subject {subject.subject_id}")

        start_time = time.time()
        try:
            attempt.transition(VerificationEvent(VerificationEventType.START))
            await self._run(attempt)
        finally:
            record_verification_metrics(
                success=attempt.step is VerificationStep.SUCCEEDED,
                processing_time=time.time() - start_time,
                score=attempt.match.score if attempt.match else None,
                subject_id=attempt.subject_id,
                action=action.value,
                outcome=attempt.last_error.code if attempt.last_error else attempt.step.value
            )

        self._log_outcome(attempt)
        if attempt.step is VerificationStep.SUCCEEDED:
            self.registry.release(attempt)
        return attempt

    async def retry_commit(self, subject_id: str) -> VerificationAttempt:
        """
        Retry only the commit of an attempt whose identity was already verified.

        Raises:
            SessionNotFound: No verification attempt for the subject
            InvalidTransition: The attempt did not fail at commit
        """
        attempt = self.get_attempt(subject_id)
        self.registry.claim(attempt)
        attempt.transition(VerificationEvent(VerificationEventType.RETRY_COMMIT))
        logger.info(f"Retrying {attempt.action.value} commit for subject {subject_id}")
        await self._run(attempt)
        self._log_outcome(attempt)
        if attempt.step is VerificationStep.SUCCEEDED:
            self.registry.release(attempt)
        return attempt

    def get_attempt(self, subject_id: str) -> VerificationAttempt:
        attempt = self.registry.get(subject_id)
        if not isinstance(attempt, VerificationAttempt):
            raise SessionNotFound()
        return attempt

    def cancel(self, subject_id: str) -> bool:
        """Cancel the subject's attempt, aborting any pending call."""
        attempt = self.registry.get(subject_id)
        if not isinstance(attempt, VerificationAttempt):
            return False
        if not attempt.is_terminal:
            attempt.transition(VerificationEvent(VerificationEventType.CANCEL))
        if attempt.in_flight is not None:
            attempt.cancelled = True
            attempt.in_flight.cancel()
        self.registry.release(attempt)
        logger.info(f"Cancelled verification {attempt.session_id} for subject {subject_id}")
        return True

    async def _run(self, attempt: VerificationAttempt) -> None:
        while attempt.step in WORKING_STEPS:
            await self._advance(attempt)

    async def _advance(self, attempt: VerificationAttempt) -> None:
        step = attempt.step
        try:
            if step is VerificationStep.FETCHING:
                event = await self._fetch(attempt)
            elif step is VerificationStep.CAPTURING:
                event = await self._capture(attempt)
            elif step is VerificationStep.MATCHING:
                event = await self._match(attempt)
            else:
                event = await self._commit(attempt)
        except SessionCancelled:
            logger.info(f"Verification {attempt.session_id} cancelled during {step.value}")
            raise

        # Cancelled while the call was completing
        if attempt.cancelled:
            raise SessionCancelled()
        attempt.transition(event)

    async def _fetch(self, attempt: VerificationAttempt) -> VerificationEvent:
        try:
            template = await run_cancellable(attempt, self.store.fetch_template(attempt.subject_id))
        except SessionCancelled:
            raise
        except FingerprintError as e:
            logger.warning(f"Template fetch failed for subject {attempt.subject_id}: {e}")
            return VerificationEvent(VerificationEventType.FETCH_FAILED, error=e)
        return VerificationEvent(VerificationEventType.TEMPLATE_FETCHED, template=template)

    async def _capture(self, attempt: VerificationAttempt) -> VerificationEvent:
        try:
            sample = await run_cancellable(attempt, self.device.capture())
        except SessionCancelled:
            raise
        except FingerprintError as e:
            logger.warning(f"Capture failed for subject {attempt.subject_id}: {e}")
            return VerificationEvent(VerificationEventType.CAPTURE_FAILED, error=e)
        return VerificationEvent(VerificationEventType.CAPTURED, sample=sample)

    async def _match(self, attempt: VerificationAttempt) -> VerificationEvent:
        try:
            result = await run_cancellable(
                attempt, self.device.match(attempt.stored_template, attempt.captured_sample)
            )
        except SessionCancelled:
            raise
        except FingerprintError as e:
            logger.error(f"Matcher failed for subject {attempt.subject_id}: {e}")
            return VerificationEvent(VerificationEventType.MATCH_FAILED, error=e)
        return VerificationEvent(VerificationEventType.MATCHED, match=result)

    async def _commit(self, attempt: VerificationAttempt) -> VerificationEvent:
        try:
            if attempt.action is VerificationAction.AUTHORIZE_LEAVE:
                operation = self.store.submit_leave(attempt.subject_id, attempt.leave, attempt.verified_at)
            else:
                operation = self.store.record_event(attempt.subject_id, attempt.action, attempt.verified_at)
            record = await run_cancellable(attempt, operation)
        except SessionCancelled:
            raise
        except FingerprintError as e:
            logger.error(f"Commit of {attempt.action.value} failed for subject {attempt.subject_id}: {e}")
            return VerificationEvent(VerificationEventType.COMMIT_FAILED, error=CommitFailed(cause=e))
        return VerificationEvent(VerificationEventType.COMMITTED, record=record)

    @staticmethod
    def _log_outcome(attempt: VerificationAttempt) -> None:
        if attempt.step is VerificationStep.SUCCEEDED:
            logger.info(f"{attempt.action.value} verified and recorded for subject {attempt.subject_id}")
        elif isinstance(attempt.last_error, DeviceUnavailable):
            logger.error(f"Verification for subject {attempt.subject_id} failed: scanner unavailable")
        else:
            logger.info(
                f"Verification for subject {attempt.subject_id} ended in {attempt.step.value}: "
                f"{attempt.last_error.code if attempt.last_error else 'no error'}"
            )


# Global service instance
_verification_service: Optional[VerificationService] = None


def get_verification_service() -> VerificationService:
    """Get the global verification service instance."""
    global _verification_service
    if _verification_service is None:
        _verification_service = VerificationService()
    return _verification_service
