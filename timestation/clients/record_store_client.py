"""Record store client for fingerprint templates and workforce events."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx

from timestation.config import settings
from timestation.errors import NotEnrolled, StoreUnavailable, SubjectNotFound
from timestation.models.internal_models import (
    VERIFICATION_METHOD,
    EventRecord,
    LeaveRequest,
    Subject,
    VerificationAction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _error_message(response: httpx.Response, fallback: str) -> str:
    """Pull the {"error": ...} message out of an error response, if any."""
    try:
        body = response.json()
    except ValueError:
        return f"{fallback} (HTTP {response.status_code})"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"{fallback} (HTTP {response.status_code})"


class RecordStoreClient:
    """Client for the workforce backend API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        request_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the client with configuration."""
        self.base_url = (base_url or settings.record_store_url).rstrip("/")
        self.request_timeout = request_timeout or settings.store_request_timeout
        self.max_retries = max_retries or settings.store_max_retries
        self.retry_base_delay = settings.store_retry_base_delay if retry_base_delay is None else retry_base_delay
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def retry_operation(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry an operation on StoreUnavailable with exponential backoff."""
        last_exception: Optional[StoreUnavailable] = None

        for attempt in range(self.max_retries):
            try:
                return await operation()
            except StoreUnavailable as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(f"Record store operation failed (attempt {attempt + 1}/{self.max_retries}), retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Record store operation failed after {self.max_retries} attempts: {e}")

        raise last_exception

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self.client.request(method, path, json=json)
        except httpx.RequestError as e:
            logger.error(f"Record store request {method} {path} failed: {e}")
            raise StoreUnavailable(f"Records service unreachable: {e}")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise StoreUnavailable(
                "Records service not responding correctly", status_code=response.status_code
            )
        return body if isinstance(body, dict) else {"data": body}

    async def lookup_subject(self, subject_id: str) -> Subject:
        """
        Look up an employee by their external id.

        Raises:
            SubjectNotFound: No such employee
            StoreUnavailable: Network or server error
        """
        async def operation() -> Subject:
            response = await self._send("GET", f"/employees/lookup/{subject_id}")
            if response.status_code == 404:
                raise SubjectNotFound()
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to lookup employee"),
                    status_code=response.status_code
                )
            data = self._json(response)
            department = data.get("department")
            if isinstance(department, dict):
                department = department.get("name")
            return Subject(
                subject_id=str(data.get("employeeId") or subject_id),
                first_name=data.get("firstName") or "",
                last_name=data.get("lastName") or "",
                status=data.get("status") or "active",
                fingerprint_enrolled=bool(data.get("fingerprintEnrolled")),
                department=department
            )

        subject = await self.retry_operation(operation)
        logger.info(f"Looked up subject {subject_id}: status={subject.status}, enrolled={subject.fingerprint_enrolled}")
        return subject

    async def fetch_template(self, subject_id: str) -> str:
        """
        Fetch the stored enrollment template for a subject.

        Returns:
            Stored template as base64 text

        Raises:
            NotEnrolled: No template stored for the subject
            StoreUnavailable: Network or server error
        """
        async def operation() -> str:
            response = await self._send("GET", f"/employees/fingerprint-template/{subject_id}")
            if response.status_code == 404:
                raise NotEnrolled()
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to fetch fingerprint data"),
                    status_code=response.status_code
                )
            template = self._json(response).get("template")
            if not template:
                raise NotEnrolled("No fingerprint template found. Please enroll first.")
            return template

        template = await self.retry_operation(operation)
        logger.info(f"Retrieved stored template for subject {subject_id}")
        return template

    async def persist_template(
        self,
        subject_id: str,
        template_data: str,
        quality: int = 100,
        finger_index: int = 0
    ) -> Dict[str, Any]:
        """
        Store the merged template for a subject, replacing any earlier one.

        Raises:
            StoreUnavailable: Network or server error
        """
        payload = {"template": template_data, "fingerNo": finger_index, "quality": quality}

        async def operation() -> Dict[str, Any]:
            response = await self._send("POST", f"/employees/fingerprint-enroll/{subject_id}", json=payload)
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to save fingerprint to database"),
                    status_code=response.status_code
                )
            return self._json(response)

        result = await self.retry_operation(operation)
        logger.info(f"Persisted fingerprint template for subject {subject_id} (finger {finger_index}, quality {quality})")
        return result

    async def record_event(
        self,
        subject_id: str,
        action: VerificationAction,
        timestamp: datetime,
        verification_method: str = VERIFICATION_METHOD
    ) -> EventRecord:
        """
        Record a clock-in or clock-out.

        Raises:
            StoreUnavailable: Network or server error
        """
        if action is VerificationAction.AUTHORIZE_LEAVE:
            raise ValueError("Leave authorizations are submitted with submit_leave()")

        payload = {
            "employeeId": subject_id,
            "type": action.value,
            "timestamp": timestamp.isoformat(),
            "verificationMethod": verification_method
        }

        async def operation() -> Dict[str, Any]:
            response = await self._send("POST", "/attendance/record", json=payload)
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to record attendance"),
                    status_code=response.status_code
                )
            return self._json(response)

        data = await self.retry_operation(operation)
        logger.info(f"Recorded {action.value} for subject {subject_id}")
        return EventRecord(
            subject_id=subject_id,
            action=action,
            timestamp=timestamp,
            verification_method=verification_method,
            record_id=_record_id(data),
            message=data.get("message"),
            raw=data
        )

    async def submit_leave(
        self,
        subject_id: str,
        leave: LeaveRequest,
        verified_at: datetime,
        verification_method: str = VERIFICATION_METHOD
    ) -> EventRecord:
        """
        Submit a leave request authorized by a fingerprint match.

        Raises:
            StoreUnavailable: Network or server error
        """
        payload = {
            "employeeId": subject_id,
            "leaveType": leave.leave_type,
            "startDate": leave.start_date.isoformat(),
            "endDate": leave.end_date.isoformat(),
            "reason": leave.reason,
            "verificationMethod": verification_method,
            "verifiedAt": verified_at.isoformat()
        }

        async def operation() -> Dict[str, Any]:
            response = await self._send("POST", "/leaves", json=payload)
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to submit leave request"),
                    status_code=response.status_code
                )
            return self._json(response)

        data = await self.retry_operation(operation)
        logger.info(f"Submitted {leave.leave_type} leave for subject {subject_id}")
        return EventRecord(
            subject_id=subject_id,
            action=VerificationAction.AUTHORIZE_LEAVE,
            timestamp=verified_at,
            verification_method=verification_method,
            record_id=_record_id(data),
            message=data.get("message"),
            raw=data
        )

    async def list_templates(self) -> List[Tuple[str, str]]:
        """List every stored (subject_id, template) pair."""
        async def operation() -> List[Tuple[str, str]]:
            response = await self._send("GET", "/fingerprints")
            if not response.is_success:
                raise StoreUnavailable(
                    _error_message(response, "Failed to list fingerprint templates"),
                    status_code=response.status_code
                )
            try:
                body = response.json()
            except ValueError:
                raise StoreUnavailable("Records service not responding correctly", status_code=response.status_code)
            if isinstance(body, dict):
                body = body.get("data") or body.get("fingerprints") or []
            return [
                (str(item["employeeId"]), item["template"])
                for item in body
                if item.get("employeeId") and item.get("template")
            ]

        return await self.retry_operation(operation)


def _record_id(data: Dict[str, Any]) -> Optional[str]:
    record = data.get("data") if isinstance(data.get("data"), dict) else data
    record_id = record.get("id")
    return str(record_id) if record_id is not None else None


# Global client instance
_record_store_client: Optional[RecordStoreClient] = None


def get_record_store_client() -> RecordStoreClient:
    """Get the global record store client instance."""
    global _record_store_client
    if _record_store_client is None:
        _record_store_client = RecordStoreClient()
    return _record_store_client
