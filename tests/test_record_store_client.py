"""
Tests for the record store client.
"""

import json
from datetime import date, datetime, timezone

import httpx
import pytest

from timestation.clients.record_store_client import RecordStoreClient
from timestation.errors import NotEnrolled, StoreUnavailable, SubjectNotFound
from timestation.models.internal_models import LeaveRequest, VerificationAction


class FakeRecordStore:
    """In-memory stand-in for the workforce backend."""

    def __init__(self):
        self.templates = {}
        self.events = []
        self.leaves = []
        self.requests = []
        self.fail_next = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            self.fail_next -= 1
            return httpx.Response(503, json={"error": "Service unavailable"})

        path = request.url.path
        if request.method == "GET" and path.startswith("/api/employees/fingerprint-template/"):
            subject_id = path.rsplit("/", 1)[-1]
            if subject_id not in self.templates:
                return httpx.Response(404, json={"error": "No fingerprint template found"})
            return httpx.Response(200, json={"template": self.templates[subject_id]["template"]})

        if request.method == "POST" and path.startswith("/api/employees/fingerprint-enroll/"):
            subject_id = path.rsplit("/", 1)[-1]
            self.templates[subject_id] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        if request.method == "POST" and path == "/api/attendance/record":
            body = json.loads(request.content)
            self.events.append(body)
            return httpx.Response(201, json={"data": {"id": len(self.events)}, "message": "Clock-in recorded"})

        if request.method == "POST" and path == "/api/leaves":
            self.leaves.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "L-1"})

        if request.method == "GET" and path.startswith("/api/employees/lookup/"):
            subject_id = path.rsplit("/", 1)[-1]
            if subject_id != "1001":
                return httpx.Response(404, json={"error": "Employee not found"})
            return httpx.Response(200, json={
                "employeeId": "1001",
                "firstName": "Ada",
                "lastName": "Okafor",
                "status": "active",
                "fingerprintEnrolled": True,
                "department": {"name": "Operations"}
            })

        if request.method == "GET" and path == "/api/fingerprints":
            return httpx.Response(200, json=[
                {"employeeId": subject_id, "template": data["template"]}
                for subject_id, data in self.templates.items()
            ])

        return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def fake_store():
    return FakeRecordStore()


@pytest.fixture
def client(fake_store):
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_store), base_url="http://records/api"
    )
    return RecordStoreClient(
        base_url="http://records/api",
        http_client=http_client,
        max_retries=3,
        retry_base_delay=0
    )


class TestTemplates:
    """Test cases for template fetch and persistence."""

    @pytest.mark.asyncio
    async def test_fetch_unknown_subject_is_not_enrolled(self, client, fake_store):
        with pytest.raises(NotEnrolled):
            await client.fetch_template("1001")

        # Not a transient failure, so no retries
        assert len(fake_store.requests) == 1

    @pytest.mark.asyncio
    async def test_persist_then_fetch(self, client, fake_store):
        await client.persist_template("1001", "TUVSR0VE", quality=100, finger_index=0)

        assert fake_store.templates["1001"] == {"template": "TUVSR0VE", "fingerNo": 0, "quality": 100}
        assert await client.fetch_template("1001") == "TUVSR0VE"

    @pytest.mark.asyncio
    async def test_persist_is_idempotent(self, client, fake_store):
        await client.persist_template("1001", "TUVSR0VE")
        await client.persist_template("1001", "TUVSR0VE")

        assert len(fake_store.templates) == 1
        assert fake_store.templates["1001"]["template"] == "TUVSR0VE"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, client, fake_store):
        fake_store.fail_next = 2

        await client.persist_template("1001", "TUVSR0VE")

        assert len(fake_store.requests) == 3
        assert "1001" in fake_store.templates

    @pytest.mark.asyncio
    async def test_persistent_failure_raises_store_unavailable(self, client, fake_store):
        fake_store.fail_next = 10

        with pytest.raises(StoreUnavailable) as exc_info:
            await client.fetch_template("1001")

        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "Service unavailable"
        assert len(fake_store.requests) == 3

    @pytest.mark.asyncio
    async def test_unreachable_store(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = RecordStoreClient(
            base_url="http://records/api",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://records/api"),
            max_retries=2,
            retry_base_delay=0
        )

        with pytest.raises(StoreUnavailable):
            await client.persist_template("1001", "TUVSR0VE")

    @pytest.mark.asyncio
    async def test_list_templates(self, client, fake_store):
        fake_store.templates = {"1001": {"template": "QQ=="}, "1002": {"template": "Qg=="}}

        assert sorted(await client.list_templates()) == [("1001", "QQ=="), ("1002", "Qg==")]


class TestEvents:
    """Test cases for attendance and leave submission."""

    @pytest.fixture
    def verified_at(self):
        return datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_record_clock_in(self, client, fake_store, verified_at):
        record = await client.record_event("1001", VerificationAction.CLOCK_IN, verified_at)

        assert fake_store.events == [{
            "employeeId": "1001",
            "type": "clock_in",
            "timestamp": "2024-03-04T08:00:00+00:00",
            "verificationMethod": "FINGERPRINT"
        }]
        assert record.record_id == "1"
        assert record.message == "Clock-in recorded"
        assert record.timestamp == verified_at

    @pytest.mark.asyncio
    async def test_record_event_rejects_leave(self, client, verified_at):
        with pytest.raises(ValueError):
            await client.record_event("1001", VerificationAction.AUTHORIZE_LEAVE, verified_at)

    @pytest.mark.asyncio
    async def test_submit_leave(self, client, fake_store, verified_at):
        leave = LeaveRequest(
            leave_type="annual",
            start_date=date(2024, 3, 11),
            end_date=date(2024, 3, 15),
            reason="Family visit"
        )

        record = await client.submit_leave("1001", leave, verified_at)

        assert fake_store.leaves[0]["leaveType"] == "annual"
        assert fake_store.leaves[0]["startDate"] == "2024-03-11"
        assert fake_store.leaves[0]["endDate"] == "2024-03-15"
        assert fake_store.leaves[0]["verificationMethod"] == "FINGERPRINT"
        assert record.action is VerificationAction.AUTHORIZE_LEAVE
        assert record.record_id == "L-1"


class TestLookup:
    """Test cases for employee lookup."""

    @pytest.mark.asyncio
    async def test_lookup_subject(self, client):
        subject = await client.lookup_subject("1001")

        assert subject.full_name == "Ada Okafor"
        assert subject.fingerprint_enrolled is True
        assert subject.department == "Operations"
        assert subject.is_active

    @pytest.mark.asyncio
    async def test_lookup_unknown_subject(self, client):
        with pytest.raises(SubjectNotFound):
            await client.lookup_subject("9999")
