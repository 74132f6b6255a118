"""
Fingerprint enrollment workflow.

An EnrollmentSession is a plain state machine driven through transition():

    Idle -> AwaitingCapture(1..3) -> Merging -> Persisting -> Succeeded

Failed is reachable from any step. A failed capture keeps the session at the
same capture number with earlier samples retained. A merge failure discards
every sample, and a retry starts a fresh attempt at capture 1. A persistence
failure keeps the merged template so only the write is retried.

EnrollmentService performs the device and record store calls and feeds
their results back as events.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from timestation.clients.device_client import DeviceClient, get_device_client
from timestation.clients.record_store_client import RecordStoreClient, get_record_store_client
from timestation.config import settings
from timestation.errors import (
    DeviceUnavailable,
    FingerprintError,
    InvalidTransition,
    MergeFailed,
    RecoveryAction,
    SessionActive,
    SessionCancelled,
    SessionNotFound,
)
from timestation.models.internal_models import (
    ENROLLMENT_CAPTURES,
    CaptureSample,
    EnrollmentTemplate,
    utcnow,
)
from timestation.observability import record_capture_metrics, record_enrollment_metrics, trace_function
from timestation.services.sessions import Session, SessionRegistry, get_session_registry, run_cancellable

logger = logging.getLogger(__name__)


class EnrollmentStep(str, Enum):
    IDLE = "idle"
    AWAITING_CAPTURE = "awaiting_capture"
    MERGING = "merging"
    PERSISTING = "persisting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EnrollmentEventType(str, Enum):
    START = "start"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    MERGED = "merged"
    MERGE_FAILED = "merge_failed"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    RETRY = "retry"
    CANCEL = "cancel"


@dataclass
class EnrollmentEvent:
    type: EnrollmentEventType
    sample: Optional[CaptureSample] = None
    template: Optional[str] = None
    error: Optional[FingerprintError] = None


TERMINAL_STEPS = (EnrollmentStep.SUCCEEDED, EnrollmentStep.FAILED, EnrollmentStep.CANCELLED)


class EnrollmentSession(Session):
    """Transient state for enrolling one subject's fingerprint."""

    kind = "enrollment"

    def __init__(self, subject_id: str, finger_index: int = 0, quality: int = 100):
        super().__init__(subject_id)
        self.finger_index = finger_index
        self.quality = quality
        self.captures_required = ENROLLMENT_CAPTURES

        self.step = EnrollmentStep.IDLE
        self.capture_number = 0
        self.samples: List[CaptureSample] = []
        self.merged_template: Optional[str] = None
        self.template: Optional[EnrollmentTemplate] = None
        self.last_error: Optional[FingerprintError] = None
        self.attempt = 0
        self._recovery = RecoveryAction.NONE

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    @property
    def recovery(self) -> RecoveryAction:
        if self.step is EnrollmentStep.FAILED:
            return self._recovery
        if self.step is EnrollmentStep.AWAITING_CAPTURE and self.last_error is not None:
            return RecoveryAction.RETRY_CAPTURE
        return RecoveryAction.NONE

    @property
    def prompt(self) -> str:
        """What the user should do next."""
        if self.step is EnrollmentStep.AWAITING_CAPTURE:
            if self.capture_number > 1 and self.last_error is None:
                return f"Lift finger, then place it again for capture {self.capture_number} of {self.captures_required}"
            return f"Capture {self.capture_number} of {self.captures_required}: place finger on scanner"
        if self.step is EnrollmentStep.MERGING:
            return "Merging fingerprint templates..."
        if self.step is EnrollmentStep.PERSISTING:
            return "Saving to database..."
        if self.step is EnrollmentStep.SUCCEEDED:
            return "Fingerprint enrolled successfully!"
        if self.step is EnrollmentStep.FAILED and self.last_error is not None:
            return self.last_error.message
        return ""

    def transition(self, event: EnrollmentEvent) -> EnrollmentStep:
        """
        Apply an event and return the new step.

        Raises:
            InvalidTransition: The event is not valid in the current step
        """
        handler = _TRANSITIONS.get((self.step, event.type))
        if handler is None:
            if event.type is EnrollmentEventType.CANCEL and self.step is not EnrollmentStep.CANCELLED \
                    and self.step is not EnrollmentStep.SUCCEEDED:
                handler = EnrollmentSession._on_cancel
            else:
                raise InvalidTransition(self.step.value, event.type.value)

        previous = self.step
        handler(self, event)
        logger.debug(f"Enrollment {self.session_id} for {self.subject_id}: {previous.value} -> {self.step.value} on {event.type.value}")
        return self.step

    def _fail(self, error: FingerprintError, recovery: RecoveryAction) -> None:
        self.last_error = error
        self._recovery = recovery
        self.step = EnrollmentStep.FAILED

    def _begin_attempt(self) -> None:
        # A new list, so nothing from an earlier attempt can leak into the next merge
        self.samples = []
        self.merged_template = None
        self.last_error = None
        self._recovery = RecoveryAction.NONE
        self.attempt += 1
        self.capture_number = 1
        self.step = EnrollmentStep.AWAITING_CAPTURE

    def _on_start(self, event: EnrollmentEvent) -> None:
        self._begin_attempt()

    def _on_captured(self, event: EnrollmentEvent) -> None:
        if event.sample is None:
            raise ValueError("captured event requires a sample")
        self.samples.append(event.sample)
        self.last_error = None
        if len(self.samples) < self.captures_required:
            self.capture_number = len(self.samples) + 1
        else:
            self.step = EnrollmentStep.MERGING

    def _on_capture_failed(self, event: EnrollmentEvent) -> None:
        error = event.error or FingerprintError()
        if isinstance(error, DeviceUnavailable):
            self.samples = []
            self._fail(error, RecoveryAction.CHECK_DEVICE)
            return
        # Stay on the same capture number; earlier samples are kept
        self.last_error = error

    def _on_merged(self, event: EnrollmentEvent) -> None:
        if not event.template:
            raise ValueError("merged event requires a template")
        self.merged_template = event.template
        self.step = EnrollmentStep.PERSISTING

    def _on_merge_failed(self, event: EnrollmentEvent) -> None:
        self.samples = []
        self._fail(event.error or MergeFailed(), RecoveryAction.RESTART_ENROLLMENT)

    def _on_persisted(self, event: EnrollmentEvent) -> None:
        self.template = EnrollmentTemplate(
            subject_id=self.subject_id,
            template_data=self.merged_template,
            quality=self.quality,
            finger_index=self.finger_index
        )
        self.last_error = None
        self.step = EnrollmentStep.SUCCEEDED

    def _on_persist_failed(self, event: EnrollmentEvent) -> None:
        # Samples and the merged template stay for a persistence-only retry
        self._fail(event.error or FingerprintError(), RecoveryAction.RETRY_PERSIST)

    def _on_retry(self, event: EnrollmentEvent) -> None:
        if self._recovery is RecoveryAction.RETRY_PERSIST and self.merged_template:
            self.last_error = None
            self._recovery = RecoveryAction.NONE
            self.step = EnrollmentStep.PERSISTING
            return
        # A restart is a new session for the same subject
        self.session_id = str(uuid.uuid4())
        self.created_at = utcnow()
        self._begin_attempt()

    def _on_cancel(self, event: EnrollmentEvent) -> None:
        self.cancelled = True
        self.samples = []
        self.step = EnrollmentStep.CANCELLED


_TRANSITIONS = {
    (EnrollmentStep.IDLE, EnrollmentEventType.START): EnrollmentSession._on_start,
    (EnrollmentStep.AWAITING_CAPTURE, EnrollmentEventType.CAPTURED): EnrollmentSession._on_captured,
    (EnrollmentStep.AWAITING_CAPTURE, EnrollmentEventType.CAPTURE_FAILED): EnrollmentSession._on_capture_failed,
    (EnrollmentStep.MERGING, EnrollmentEventType.MERGED): EnrollmentSession._on_merged,
    (EnrollmentStep.MERGING, EnrollmentEventType.MERGE_FAILED): EnrollmentSession._on_merge_failed,
    (EnrollmentStep.PERSISTING, EnrollmentEventType.PERSISTED): EnrollmentSession._on_persisted,
    (EnrollmentStep.PERSISTING, EnrollmentEventType.PERSIST_FAILED): EnrollmentSession._on_persist_failed,
    (EnrollmentStep.FAILED, EnrollmentEventType.RETRY): EnrollmentSession._on_retry,
}


class EnrollmentService:
    """
    Drives enrollment sessions against the device and the record store.

    Each capture is a separate call so a UI can prompt between placements;
    the third successful capture triggers the merge and the write.
    """

    def __init__(
        self,
        device: Optional[DeviceClient] = None,
        store: Optional[RecordStoreClient] = None,
        registry: Optional[SessionRegistry] = None,
        finger_index: Optional[int] = None,
        quality: Optional[int] = None,
        lift_finger_delay: Optional[float] = None,
        check_device: bool = True
    ):
        """
        Initialize enrollment service.

        Args:
            device: Device client. If None, uses the global one.
            store: Record store client. If None, uses the global one.
            registry: Session registry shared with verification.
            finger_index: Which finger is enrolled (default: settings.default_finger_index)
            quality: Quality score stored with the template (default: settings.default_quality)
            lift_finger_delay: Pause between captures in enroll()
            check_device: Check scanner health before starting a session
        """
        self.device = device or get_device_client()
        self.store = store or get_record_store_client()
        self.registry = registry or get_session_registry()
        self.finger_index = settings.default_finger_index if finger_index is None else finger_index
        self.quality = settings.default_quality if quality is None else quality
        self.lift_finger_delay = settings.lift_finger_delay if lift_finger_delay is None else lift_finger_delay
        self.check_device = check_device

    async def start(self, subject_id: str) -> EnrollmentSession:
        """
        Open an enrollment session for a subject.

        Raises:
            ValueError: Empty subject id
            SessionActive: Another session is active for the subject
            DeviceUnavailable: Scanner not connected
        """
        session = EnrollmentSession(subject_id, finger_index=self.finger_index, quality=self.quality)
        self.registry.claim(session)

        if self.check_device:
            health = await self.device.check_health()
            if not health.connected:
                self.registry.release(session)
                logger.error(f"Cannot start enrollment for {session.subject_id}: scanner not connected")
                raise DeviceUnavailable()

        session.transition(EnrollmentEvent(EnrollmentEventType.START))
        logger.info(f"Started enrollment {session.session_id} for subject {session.subject_id}")
        return session

    def get_session(self, subject_id: str) -> EnrollmentSession:
        session = self.registry.get(subject_id)
        if not isinstance(session, EnrollmentSession):
            raise SessionNotFound()
        return session

    @trace_function("enrollment.capture")
    async def capture(self, subject_id: str) -> EnrollmentSession:
        """
        Take the next capture. After the last one, merge and persist.

        Capture failures are recorded on the session, not raised.

        Raises:
            SessionNotFound: No enrollment session for the subject
            InvalidTransition: The session is not waiting for a capture
            SessionActive: A capture is already in progress
            SessionCancelled: The session was closed during the capture
        """
        session = self.get_session(subject_id)
        if session.step is not EnrollmentStep.AWAITING_CAPTURE:
            raise InvalidTransition(session.step.value, EnrollmentEventType.CAPTURED.value)
        if session.in_flight is not None:
            raise SessionActive("A capture is already in progress for this employee")

        capture_number = session.capture_number
        logger.info(f"Enrollment capture {capture_number}/{session.captures_required} for subject {subject_id}")
        start_time = time.time()
        try:
            sample = await run_cancellable(session, self.device.capture())
        except SessionCancelled:
            logger.info(f"Enrollment {session.session_id} closed during capture {capture_number}")
            raise
        except FingerprintError as e:
            record_capture_metrics(outcome=e.code, processing_time=time.time() - start_time)
            logger.warning(f"Enrollment capture {capture_number} failed for subject {subject_id}: {e}")
            session.transition(EnrollmentEvent(EnrollmentEventType.CAPTURE_FAILED, error=e))
            return session

        record_capture_metrics(outcome="success", processing_time=time.time() - start_time)
        if session.cancelled:
            raise SessionCancelled()
        session.transition(EnrollmentEvent(EnrollmentEventType.CAPTURED, sample=sample))

        if session.step is EnrollmentStep.MERGING:
            await self._finish(session)
        return session

    async def retry(self, subject_id: str) -> EnrollmentSession:
        """
        Recover a failed session.

        A store-side failure re-runs only the write; anything else restarts
        from capture 1 with no samples.

        Raises:
            SessionNotFound: No enrollment session for the subject
            InvalidTransition: The session has not failed
        """
        session = self.get_session(subject_id)
        self.registry.claim(session)
        session.transition(EnrollmentEvent(EnrollmentEventType.RETRY))
        logger.info(f"Retrying enrollment for subject {subject_id}: now {session.step.value} (attempt {session.attempt})")

        if session.step is EnrollmentStep.PERSISTING:
            await self._finish(session)
        return session

    def close(self, subject_id: str) -> bool:
        """
        Discard the subject's enrollment session, aborting a pending capture.

        Returns:
            True if a session was closed
        """
        session = self.registry.get(subject_id)
        if not isinstance(session, EnrollmentSession):
            return False
        if session.step not in (EnrollmentStep.SUCCEEDED, EnrollmentStep.CANCELLED):
            session.transition(EnrollmentEvent(EnrollmentEventType.CANCEL))
        if session.in_flight is not None:
            session.cancelled = True
            session.in_flight.cancel()
        self.registry.release(session)
        logger.info(f"Closed enrollment {session.session_id} for subject {subject_id}")
        return True

    async def enroll(self, subject_id: str, max_capture_failures: int = 3) -> EnrollmentSession:
        """
        Run a whole enrollment in one call.

        Captures three times with a pause between placements, retrying a failed
        capture up to max_capture_failures times in total. The session is
        closed if captures keep failing.

        Returns:
            The session in its final step
        """
        session = await self.start(subject_id)
        failures = 0

        while session.step is EnrollmentStep.AWAITING_CAPTURE:
            previous = len(session.samples)
            await self.capture(subject_id)

            if session.last_error is not None and session.step is EnrollmentStep.AWAITING_CAPTURE:
                failures += 1
                if failures >= max_capture_failures:
                    logger.error(f"Giving up enrollment for subject {subject_id} after {failures} failed captures")
                    self.close(subject_id)
                    break
                continue

            if session.step is EnrollmentStep.AWAITING_CAPTURE and len(session.samples) > previous:
                await asyncio.sleep(self.lift_finger_delay)

        return session

    async def _finish(self, session: EnrollmentSession) -> None:
        start_time = time.time()
        while session.step in (EnrollmentStep.MERGING, EnrollmentStep.PERSISTING):
            if session.step is EnrollmentStep.MERGING:
                event = await self._merge(session)
            else:
                event = await self._persist(session)
            if session.cancelled:
                raise SessionCancelled()
            session.transition(event)

        success = session.step is EnrollmentStep.SUCCEEDED
        record_enrollment_metrics(
            success=success,
            processing_time=time.time() - start_time,
            subject_id=session.subject_id,
            outcome=session.last_error.code if session.last_error else session.step.value
        )
        if success:
            logger.info(f"Enrollment completed successfully for subject {session.subject_id}")
            self.registry.release(session)
        else:
            logger.warning(f"Enrollment failed for subject {session.subject_id}: {session.last_error}")

    async def _merge(self, session: EnrollmentSession) -> EnrollmentEvent:
        try:
            template = await run_cancellable(
                session, self.device.merge_templates(session.subject_id, list(session.samples))
            )
        except SessionCancelled:
            raise
        except FingerprintError as e:
            return EnrollmentEvent(EnrollmentEventType.MERGE_FAILED, error=e)
        return EnrollmentEvent(EnrollmentEventType.MERGED, template=template)

    async def _persist(self, session: EnrollmentSession) -> EnrollmentEvent:
        try:
            await run_cancellable(
                session,
                self.store.persist_template(
                    session.subject_id,
                    session.merged_template,
                    quality=session.quality,
                    finger_index=session.finger_index
                )
            )
        except SessionCancelled:
            raise
        except FingerprintError as e:
            return EnrollmentEvent(EnrollmentEventType.PERSIST_FAILED, error=e)
        return EnrollmentEvent(EnrollmentEventType.PERSISTED)


# Global service instance
_enrollment_service: Optional[EnrollmentService] = None


def get_enrollment_service() -> EnrollmentService:
    """Get the global enrollment service instance."""
    global _enrollment_service
    if _enrollment_service is None:
        _enrollment_service = EnrollmentService()
    return _enrollment_service
