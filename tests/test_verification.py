"""
Tests for the verification workflow.
"""

import asyncio
from datetime import date

import pytest

from timestation.errors import (
    CaptureTimeout,
    CommitFailed,
    DeviceUnavailable,
    FingerprintMismatch,
    InvalidTransition,
    NotEnrolled,
    RecoveryAction,
    SessionActive,
    SessionCancelled,
    StoreUnavailable,
    SubjectInactive,
)
from timestation.models.internal_models import (
    EventRecord,
    LeaveRequest,
    MatchResult,
    Subject,
    VerificationAction,
)
from timestation.services.enrollment import EnrollmentSession
from timestation.services.verification import (
    VerificationAttempt,
    VerificationEvent,
    VerificationEventType,
    VerificationService,
    VerificationStep,
)


@pytest.fixture
def service(mock_device, mock_store, registry):
    return VerificationService(device=mock_device, store=mock_store, registry=registry, fetch_before_capture=True)


@pytest.fixture
def matching_device(mock_device, samples):
    mock_device.capture.return_value = samples[0]
    mock_device.match.return_value = MatchResult(matched=True, score=87.0)
    return mock_device


def event_record(action=VerificationAction.CLOCK_IN, timestamp=None):
    return EventRecord(subject_id="1001", action=action, timestamp=timestamp, record_id="5521")


class TestVerificationAttempt:
    """State machine tests, no I/O."""

    def test_unenrolled_subject_fails_on_start(self, unenrolled_subject):
        attempt = VerificationAttempt(unenrolled_subject, VerificationAction.CLOCK_IN)

        attempt.transition(VerificationEvent(VerificationEventType.START))

        assert attempt.step is VerificationStep.FAILED
        assert isinstance(attempt.last_error, NotEnrolled)
        assert attempt.recovery is RecoveryAction.ENROLL_FIRST

    def test_capture_first_order(self, enrolled_subject, samples):
        attempt = VerificationAttempt(enrolled_subject, VerificationAction.CLOCK_IN, fetch_before_capture=False)

        attempt.transition(VerificationEvent(VerificationEventType.START))
        assert attempt.step is VerificationStep.CAPTURING
        attempt.transition(VerificationEvent(VerificationEventType.CAPTURED, sample=samples[0]))
        assert attempt.step is VerificationStep.FETCHING
        attempt.transition(VerificationEvent(VerificationEventType.TEMPLATE_FETCHED, template="U1RPUkVE"))
        assert attempt.step is VerificationStep.MATCHING

    def test_commit_unreachable_without_match(self, enrolled_subject):
        attempt = VerificationAttempt(enrolled_subject, VerificationAction.CLOCK_IN)
        attempt.transition(VerificationEvent(VerificationEventType.START))

        with pytest.raises(InvalidTransition):
            attempt.transition(VerificationEvent(VerificationEventType.COMMITTED))

    def test_retry_commit_requires_commit_failure(self, enrolled_subject):
        attempt = VerificationAttempt(enrolled_subject, VerificationAction.CLOCK_IN)
        attempt.transition(VerificationEvent(VerificationEventType.START))
        attempt.transition(VerificationEvent(VerificationEventType.FETCH_FAILED, error=StoreUnavailable()))

        with pytest.raises(InvalidTransition):
            attempt.transition(VerificationEvent(VerificationEventType.RETRY_COMMIT))

    def test_leave_requires_details(self, enrolled_subject):
        with pytest.raises(ValueError):
            VerificationAttempt(enrolled_subject, VerificationAction.AUTHORIZE_LEAVE)


class TestVerificationService:
    """Test cases for VerificationService against mocked clients."""

    @pytest.mark.asyncio
    async def test_clock_in_success(self, service, matching_device, mock_store, registry):
        mock_store.record_event.side_effect = lambda subject_id, action, timestamp: event_record(action, timestamp)

        attempt = await service.verify(
            Subject(subject_id="1001", fingerprint_enrolled=True), VerificationAction.CLOCK_IN
        )

        assert attempt.step is VerificationStep.SUCCEEDED
        assert attempt.matched
        mock_store.fetch_template.assert_awaited_once_with("1001")
        matching_device.match.assert_awaited_once()
        mock_store.record_event.assert_awaited_once_with("1001", VerificationAction.CLOCK_IN, attempt.verified_at)
        assert attempt.record.record_id == "5521"
        assert registry.get("1001") is None

    @pytest.mark.asyncio
    async def test_not_enrolled_never_captures(self, service, mock_device, mock_store, enrolled_subject):
        mock_store.fetch_template.side_effect = NotEnrolled()

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        assert attempt.step is VerificationStep.FAILED
        assert isinstance(attempt.last_error, NotEnrolled)
        assert attempt.recovery is RecoveryAction.ENROLL_FIRST
        mock_device.capture.assert_not_awaited()
        mock_store.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unenrolled_flag_skips_all_calls(self, service, mock_device, mock_store, unenrolled_subject):
        attempt = await service.verify(unenrolled_subject, VerificationAction.CLOCK_IN)

        assert isinstance(attempt.last_error, NotEnrolled)
        mock_store.fetch_template.assert_not_awaited()
        mock_device.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mismatch_never_commits(self, service, mock_device, mock_store, enrolled_subject, samples):
        mock_device.capture.return_value = samples[0]
        mock_device.match.return_value = MatchResult(matched=False, score=0.0)

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        assert attempt.step is VerificationStep.FAILED
        assert isinstance(attempt.last_error, FingerprintMismatch)
        assert attempt.recovery is RecoveryAction.RETRY_VERIFICATION
        mock_store.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_capture_timeout_fails_attempt(self, service, mock_device, mock_store, enrolled_subject):
        mock_device.capture.side_effect = CaptureTimeout()

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_OUT)

        assert isinstance(attempt.last_error, CaptureTimeout)
        mock_device.match.assert_not_awaited()
        mock_store.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_device_unavailable_during_match(self, service, matching_device, mock_store, enrolled_subject):
        matching_device.match.side_effect = DeviceUnavailable()

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        assert attempt.recovery is RecoveryAction.CHECK_DEVICE
        mock_store.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commit_failure_retries_commit_only(
        self, service, matching_device, mock_store, registry, enrolled_subject
    ):
        mock_store.record_event.side_effect = [StoreUnavailable(), event_record()]

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        assert attempt.step is VerificationStep.FAILED
        assert isinstance(attempt.last_error, CommitFailed)
        assert attempt.recovery is RecoveryAction.RETRY_COMMIT
        assert attempt.matched
        assert registry.get("1001") is attempt

        await service.retry_commit("1001")

        assert attempt.step is VerificationStep.SUCCEEDED
        assert matching_device.capture.await_count == 1
        assert matching_device.match.await_count == 1
        first, second = mock_store.record_event.await_args_list
        assert first.args == second.args
        assert registry.get("1001") is None

    @pytest.mark.asyncio
    async def test_capture_first_when_configured(self, mock_device, mock_store, registry, enrolled_subject, samples):
        calls = []

        async def capture():
            calls.append("capture")
            return samples[0]

        async def fetch_template(subject_id):
            calls.append("fetch")
            return "U1RPUkVE"

        mock_device.capture.side_effect = capture
        mock_store.fetch_template.side_effect = fetch_template
        mock_device.match.return_value = MatchResult(matched=True, score=40.0)
        mock_store.record_event.return_value = event_record()
        service = VerificationService(
            device=mock_device, store=mock_store, registry=registry, fetch_before_capture=False
        )

        attempt = await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        assert attempt.step is VerificationStep.SUCCEEDED
        assert calls == ["capture", "fetch"]

    @pytest.mark.asyncio
    async def test_second_session_rejected_before_any_device_call(
        self, service, mock_device, mock_store, registry, enrolled_subject
    ):
        registry.claim(EnrollmentSession("1001"))

        with pytest.raises(SessionActive):
            await service.verify(enrolled_subject, VerificationAction.CLOCK_IN)

        mock_store.fetch_template.assert_not_awaited()
        mock_device.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_verification_rejected(self, service, mock_device, mock_store, enrolled_subject):
        started = asyncio.Event()

        async def slow_capture():
            started.set()
            await asyncio.sleep(10)

        mock_device.capture.side_effect = slow_capture

        first = asyncio.create_task(service.verify(enrolled_subject, VerificationAction.CLOCK_IN))
        await started.wait()

        with pytest.raises(SessionActive):
            await service.verify(enrolled_subject, VerificationAction.CLOCK_OUT)
        assert mock_device.capture.await_count == 1

        assert service.cancel("1001") is True
        with pytest.raises(SessionCancelled):
            await first

    @pytest.mark.asyncio
    async def test_inactive_subject_rejected(self, service, mock_store):
        subject = Subject(subject_id="1001", status="terminated", fingerprint_enrolled=True)

        with pytest.raises(SubjectInactive):
            await service.verify(subject, VerificationAction.CLOCK_IN)

        mock_store.fetch_template.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leave_authorization(self, service, matching_device, mock_store, enrolled_subject):
        leave = LeaveRequest(leave_type="sick", start_date=date(2024, 5, 2), end_date=date(2024, 5, 3))
        mock_store.submit_leave.return_value = event_record(VerificationAction.AUTHORIZE_LEAVE)

        attempt = await service.verify(enrolled_subject, VerificationAction.AUTHORIZE_LEAVE, leave=leave)

        assert attempt.step is VerificationStep.SUCCEEDED
        mock_store.submit_leave.assert_awaited_once_with("1001", leave, attempt.verified_at)
        mock_store.record_event.assert_not_awaited()
