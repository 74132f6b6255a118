"""
Tests for the HTTP API.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from timestation.clients.device_client import get_device_client
from timestation.clients.record_store_client import get_record_store_client
from timestation.errors import (
    DeviceUnavailable,
    SessionActive,
    SubjectInactive,
    SubjectNotFound,
)
from timestation.main import app
from timestation.models.internal_models import (
    CaptureSample,
    DeviceHealth,
    EventRecord,
    MatchResult,
    Subject,
    VerificationAction,
)
from timestation.services.device_monitor import get_device_monitor
from timestation.services.enrollment import (
    EnrollmentEvent,
    EnrollmentEventType,
    EnrollmentSession,
    get_enrollment_service,
)
from timestation.services.verification import (
    VerificationAttempt,
    VerificationEvent,
    VerificationEventType,
    get_verification_service,
)


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def started_session():
    session = EnrollmentSession("1001")
    session.transition(EnrollmentEvent(EnrollmentEventType.START))
    return session


@pytest.fixture
def enrollment_service(started_session):
    service = Mock()
    service.start = AsyncMock(return_value=started_session)
    service.capture = AsyncMock(return_value=started_session)
    service.retry = AsyncMock(return_value=started_session)
    service.get_session = Mock(return_value=started_session)
    service.close = Mock(return_value=True)
    app.dependency_overrides[get_enrollment_service] = lambda: service
    return service


@pytest.fixture
def store():
    store = Mock()
    store.lookup_subject = AsyncMock(return_value=Subject(subject_id="1001", fingerprint_enrolled=True))
    app.dependency_overrides[get_record_store_client] = lambda: store
    return store


@pytest.fixture
def verification_service():
    service = Mock()
    service.verify = AsyncMock()
    service.retry_commit = AsyncMock()
    service.cancel = Mock(return_value=True)
    app.dependency_overrides[get_verification_service] = lambda: service
    return service


def succeeded_attempt(action=VerificationAction.CLOCK_IN):
    attempt = VerificationAttempt(Subject(subject_id="1001", fingerprint_enrolled=True), action)
    attempt.transition(VerificationEvent(VerificationEventType.START))
    attempt.transition(VerificationEvent(VerificationEventType.TEMPLATE_FETCHED, template="U1RPUkVE"))
    attempt.transition(VerificationEvent(VerificationEventType.CAPTURED, sample=CaptureSample(data="QQ==")))
    attempt.transition(VerificationEvent(VerificationEventType.MATCHED, match=MatchResult(matched=True, score=87.0)))
    attempt.transition(VerificationEvent(
        VerificationEventType.COMMITTED,
        record=EventRecord(subject_id="1001", action=action, timestamp=attempt.verified_at, record_id="5521")
    ))
    return attempt


class TestHealth:
    """Test cases for service endpoints."""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client):
        client.get("/healthz")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "total_requests" in response.json()["metrics"]

    def test_correlation_id_echoed(self, client):
        response = client.get("/metrics", headers={"X-Request-ID": "req_abc123"})

        assert response.headers["X-Request-ID"] == "req_abc123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestEnrollmentEndpoints:
    """Test cases for /api/v1/enrollments."""

    def test_start(self, client, enrollment_service):
        response = client.post("/api/v1/enrollments", json={"subjectId": "1001"})

        assert response.status_code == 201
        body = response.json()
        assert body["step"] == "awaiting_capture"
        assert body["captureNumber"] == 1
        assert body["samplesCaptured"] == 0
        assert body["recovery"] == "none"
        enrollment_service.start.assert_awaited_once_with("1001")

    def test_start_blank_subject(self, client, enrollment_service):
        response = client.post("/api/v1/enrollments", json={"subjectId": "   "})

        assert response.status_code == 422
        enrollment_service.start.assert_not_awaited()

    def test_start_conflict(self, client, enrollment_service):
        enrollment_service.start.side_effect = SessionActive()

        response = client.post(
            "/api/v1/enrollments", json={"subjectId": "1001"}, headers={"X-Request-ID": "req_1"}
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "session_active"
        assert body["correlation_id"] == "req_1"

    def test_start_device_unavailable(self, client, enrollment_service):
        enrollment_service.start.side_effect = DeviceUnavailable()

        response = client.post("/api/v1/enrollments", json={"subjectId": "1001"})

        assert response.status_code == 503
        assert response.json()["error"] == "device_unavailable"

    def test_capture(self, client, enrollment_service):
        response = client.post("/api/v1/enrollments/1001/capture")

        assert response.status_code == 200
        enrollment_service.capture.assert_awaited_once_with("1001")

    def test_status(self, client, enrollment_service):
        response = client.get("/api/v1/enrollments/1001")

        assert response.status_code == 200
        assert response.json()["subjectId"] == "1001"

    def test_close(self, client, enrollment_service):
        response = client.delete("/api/v1/enrollments/1001")

        assert response.status_code == 204

    def test_close_missing(self, client, enrollment_service):
        enrollment_service.close.return_value = False

        response = client.delete("/api/v1/enrollments/1001")

        assert response.status_code == 404
        assert response.json()["error"] == "session_not_found"


class TestVerificationEndpoints:
    """Test cases for /api/v1/verifications."""

    def test_clock_in(self, client, store, verification_service):
        verification_service.verify.return_value = succeeded_attempt()

        response = client.post("/api/v1/verifications/clock", json={"subjectId": "1001", "action": "clock_in"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["recordId"] == "5521"
        assert body["message"] == "Clock-in recorded"
        store.lookup_subject.assert_awaited_once_with("1001")
        subject, action = verification_service.verify.await_args.args
        assert action is VerificationAction.CLOCK_IN

    def test_clock_rejects_leave_action(self, client, store, verification_service):
        response = client.post(
            "/api/v1/verifications/clock", json={"subjectId": "1001", "action": "authorize_leave"}
        )

        assert response.status_code == 422
        verification_service.verify.assert_not_awaited()

    def test_unknown_employee(self, client, store, verification_service):
        store.lookup_subject.side_effect = SubjectNotFound()

        response = client.post("/api/v1/verifications/clock", json={"subjectId": "9999", "action": "clock_out"})

        assert response.status_code == 404
        verification_service.verify.assert_not_awaited()

    def test_inactive_employee(self, client, store, verification_service):
        verification_service.verify.side_effect = SubjectInactive("terminated")

        response = client.post("/api/v1/verifications/clock", json={"subjectId": "1001", "action": "clock_in"})

        assert response.status_code == 403
        assert response.json()["message"] == "Your account is terminated. Please contact HR."

    def test_leave_dates_validated(self, client, store, verification_service):
        response = client.post("/api/v1/verifications/leave", json={
            "subjectId": "1001",
            "leaveType": "annual",
            "startDate": "2024-03-15",
            "endDate": "2024-03-11"
        })

        assert response.status_code == 422

    def test_leave(self, client, store, verification_service):
        verification_service.verify.return_value = succeeded_attempt(VerificationAction.AUTHORIZE_LEAVE)

        response = client.post("/api/v1/verifications/leave", json={
            "subjectId": "1001",
            "leaveType": "annual",
            "startDate": "2024-03-11",
            "endDate": "2024-03-15",
            "reason": "Family visit"
        })

        assert response.status_code == 200
        assert response.json()["action"] == "authorize_leave"
        leave = verification_service.verify.await_args.kwargs["leave"]
        assert leave.leave_type == "annual"

    def test_retry_commit(self, client, verification_service):
        verification_service.retry_commit.return_value = succeeded_attempt()

        response = client.post("/api/v1/verifications/1001/retry-commit")

        assert response.status_code == 200
        verification_service.retry_commit.assert_awaited_once_with("1001")


class TestDeviceEndpoints:
    """Test cases for /api/v1/device."""

    @pytest.fixture
    def device(self):
        device = Mock()
        device.busy = False
        device.list_enrolled = AsyncMock(return_value=["1001", "1002"])
        device.initialize = AsyncMock(return_value=True)
        app.dependency_overrides[get_device_client] = lambda: device
        return device

    @pytest.fixture
    def monitor(self):
        monitor = Mock()
        monitor.last_status = DeviceHealth(connected=True, mock_mode=True, enrolled_count=2)
        monitor.poll_once = AsyncMock(return_value=DeviceHealth(connected=False))
        app.dependency_overrides[get_device_monitor] = lambda: monitor
        return monitor

    def test_status_uses_last_poll(self, client, device, monitor):
        response = client.get("/api/v1/device/status")

        assert response.status_code == 200
        assert response.json()["connected"] is True
        monitor.poll_once.assert_not_awaited()

    def test_status_refresh(self, client, device, monitor):
        response = client.get("/api/v1/device/status", params={"refresh": True})

        assert response.json()["connected"] is False
        monitor.poll_once.assert_awaited_once()

    def test_enrolled(self, client, device):
        response = client.get("/api/v1/device/enrolled")

        assert response.json() == {"enrolled": ["1001", "1002"], "count": 2}

    def test_init_failure(self, client, device):
        device.initialize.side_effect = DeviceUnavailable("No scanner found")

        response = client.post("/api/v1/device/init")

        assert response.status_code == 503
        assert response.json()["message"] == "No scanner found"
