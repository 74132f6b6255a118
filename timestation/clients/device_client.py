"""
HTTP client for the local USB fingerprint device service.

The device service owns the physical scanner and exposes capture, template
merge, 1:1 match/verify and 1:N identify operations over JSON. This client
normalizes its responses and transport failures into the fingerprint error
taxonomy and serializes device calls, since the scanner can only serve one
operation at a time.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from timestation.config import settings
from timestation.errors import (
    CaptureFailed,
    CaptureTimeout,
    DeviceBusy,
    DeviceUnavailable,
    MatcherError,
    MergeFailed,
)
from timestation.models.internal_models import (
    ENROLLMENT_CAPTURES,
    CaptureSample,
    DeviceHealth,
    IdentifyResult,
    MatchResult,
)

logger = logging.getLogger(__name__)


def is_match(response: Dict[str, Any], flag: str = "matched") -> bool:
    """
    Decide whether a match/verify response means the fingerprints match.

    Device builds disagree on how they signal a match: some set the boolean
    flag, others only return a positive score. Either one counts.

    Args:
        response: Decoded JSON body from /match or /verify
        flag: Name of the boolean field ("matched" for /match, "verified" for /verify)

    Returns:
        True if the flag is true or the score is positive
    """
    if response.get(flag) is True:
        return True
    score = _score(response)
    return score is not None and score > 0


def _score(response: Dict[str, Any]) -> Optional[float]:
    score = response.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    return float(score)


def _count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _is_busy(status_code: int, error: str) -> bool:
    return status_code == 409 or "busy" in error.lower()


class DeviceClient:
    """
    Async client for the fingerprint device service.

    All operations except the health check hold a lock for the duration of the
    request, so concurrent sessions queue on the scanner instead of colliding.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        capture_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        health_timeout: Optional[float] = None,
        busy_retries: Optional[int] = None,
        busy_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize device client.

        Args:
            base_url: Device service URL (default: settings.device_service_url)
            capture_timeout: Seconds to wait for a finger before giving up (default: 15.0)
            request_timeout: Timeout for non-capture operations
            health_timeout: Timeout for health checks
            busy_retries: How many times to retry a capture the device reports as busy
            busy_delay: Seconds to wait before retrying a busy capture
            http_client: Optional preconfigured httpx client (used by tests)
        """
        self.base_url = (base_url or settings.device_service_url).rstrip("/")
        self.capture_timeout = capture_timeout or settings.capture_timeout
        self.request_timeout = request_timeout or settings.device_request_timeout
        self.health_timeout = health_timeout or settings.health_check_timeout
        self.busy_retries = settings.device_busy_retries if busy_retries is None else busy_retries
        self.busy_delay = settings.device_busy_delay if busy_delay is None else busy_delay

        self._client = http_client
        self._owns_client = http_client is None
        self._lock = asyncio.Lock()

        logger.info(f"Initialized device client for URL: {self.base_url}")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.request_timeout)
        return self._client

    @property
    def busy(self) -> bool:
        """Whether a device operation is currently in flight."""
        return self._lock.locked()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Send one request and decode the JSON body.

        Timeouts are re-raised untouched so callers can tell them apart from
        other transport failures.

        Raises:
            httpx.TimeoutException: If the request timed out
            DeviceUnavailable: On connection errors or a non-JSON response
        """
        try:
            response = await self.client.request(
                method, path, json=json, timeout=timeout or self.request_timeout
            )
        except httpx.TimeoutException:
            raise
        except httpx.RequestError as e:
            logger.error(f"Fingerprint service unreachable at {self.base_url}{path}: {e}")
            raise DeviceUnavailable(f"Fingerprint service not running: {e}")

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Non-JSON response from {path}: HTTP {response.status_code}")
            raise DeviceUnavailable(
                f"Invalid response from fingerprint service (HTTP {response.status_code})"
            )

        if not isinstance(data, dict):
            raise DeviceUnavailable(f"Unexpected response from fingerprint service: {data!r}")

        return response.status_code, data

    async def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a non-capture device operation under the device lock."""
        async with self._lock:
            try:
                _, data = await self._request(method, path, json=json)
            except httpx.TimeoutException as e:
                logger.error(f"Fingerprint service timed out on {path}: {e}")
                raise DeviceUnavailable(f"Fingerprint service did not respond within {self.request_timeout:.0f}s")
        return data

    async def check_health(self) -> DeviceHealth:
        """
        Check whether the device service is running and a scanner is usable.

        Never raises; any failure is reported as connected=False. Safe to poll.
        """
        try:
            response = await self.client.get("/health", timeout=self.health_timeout)
            if not response.is_success:
                logger.warning(f"Device health check returned HTTP {response.status_code}")
                return DeviceHealth(connected=False)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Device health check failed: {e}")
            return DeviceHealth(connected=False)

        if not isinstance(data, dict):
            return DeviceHealth(connected=False)

        device_opened = data.get("device_opened") is True
        mock_mode = data.get("mock_mode") is True
        health = DeviceHealth(
            connected=device_opened or mock_mode,
            mock_mode=mock_mode,
            device_opened=device_opened,
            enrolled_count=_count(data.get("enrolled_count")),
            initialized=data.get("initialized") is True
        )
        logger.debug(f"Device health: connected={health.connected}, mock_mode={health.mock_mode}")
        return health

    async def capture(self, timeout: Optional[float] = None) -> CaptureSample:
        """
        Capture a single fingerprint sample.

        The user must place a finger on the scanner. The request is abandoned
        client-side once the timeout elapses.

        Args:
            timeout: Seconds to wait for a finger (default: self.capture_timeout)

        Returns:
            CaptureSample holding the base64 template

        Raises:
            CaptureTimeout: No response within the timeout
            DeviceBusy: Device still busy after the configured retries
            CaptureFailed: Device reported a placement or quality problem
            DeviceUnavailable: Device service unreachable
        """
        timeout = timeout or self.capture_timeout
        attempts = self.busy_retries + 1

        for attempt in range(attempts):
            logger.info(f"Starting capture (timeout: {timeout}s, attempt {attempt + 1}/{attempts})")
            try:
                async with self._lock:
                    status_code, data = await asyncio.wait_for(
                        self._request("POST", "/capture", timeout=timeout),
                        timeout=timeout
                    )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                logger.warning(f"Capture timed out after {timeout}s")
                raise CaptureTimeout(f"Capture timeout - no finger detected within {timeout:.0f}s. Try again.")

            template = data.get("template")
            if data.get("success") and isinstance(template, str) and template:
                logger.info(f"Capture succeeded: {data.get('size') or len(template)} bytes")
                return CaptureSample(data=template, size=data.get("size"))

            error = data.get("error") or ""
            if _is_busy(status_code, error):
                if attempt < attempts - 1:
                    logger.warning(f"Device busy, retrying capture in {self.busy_delay}s")
                    await asyncio.sleep(self.busy_delay)
                    continue
                raise DeviceBusy(error or None)

            logger.warning(f"Capture failed: {error or 'no template returned'}")
            raise CaptureFailed(error or None)

        raise DeviceBusy()

    async def merge_templates(self, subject_id: str, samples: Sequence[CaptureSample]) -> str:
        """
        Merge exactly three capture samples into one enrollment template.

        Args:
            subject_id: Subject the template is for
            samples: The three captured samples, in capture order

        Returns:
            Merged template as base64 text

        Raises:
            MergeFailed: Wrong number of samples or the device rejected them
            DeviceUnavailable: Device service unreachable
        """
        if len(samples) != ENROLLMENT_CAPTURES:
            raise MergeFailed(
                f"Exactly {ENROLLMENT_CAPTURES} captures are required to enroll, got {len(samples)}"
            )

        logger.info(f"Merging {len(samples)} templates for subject {subject_id}")
        data = await self._call(
            "POST",
            "/enroll",
            json={"userId": subject_id, "templates": [sample.data for sample in samples]}
        )

        template = data.get("template")
        if not data.get("success") or not isinstance(template, str) or not template:
            logger.warning(f"Merge failed for subject {subject_id}: {data.get('error')}")
            raise MergeFailed(data.get("error") or None)

        return template

    async def match(self, template: str, sample: CaptureSample) -> MatchResult:
        """
        Compare a captured sample against a stored template (1:1).

        Raises:
            MatcherError: The device refused the comparison
            DeviceUnavailable: Device service unreachable
        """
        data = await self._call(
            "POST", "/match", json={"template1": template, "template2": sample.data}
        )
        if not data.get("success"):
            logger.error(f"Match request failed: {data.get('error')}")
            raise MatcherError(data.get("error") or None)

        result = MatchResult(matched=is_match(data, "matched"), score=_score(data))
        logger.info(f"Match result: matched={result.matched}, score={result.score}")
        return result

    async def verify(self, subject_id: str, sample: CaptureSample) -> MatchResult:
        """Verify a sample against a template held in device memory for the subject."""
        data = await self._call(
            "POST", "/verify", json={"userId": subject_id, "template": sample.data}
        )
        if not data.get("success"):
            raise MatcherError(data.get("error") or None)
        return MatchResult(matched=is_match(data, "verified"), score=_score(data))

    async def identify(self, sample: CaptureSample) -> IdentifyResult:
        """Identify a sample against every template in device memory (1:N)."""
        data = await self._call("POST", "/identify", json={"template": sample.data})
        if not data.get("success"):
            raise MatcherError(data.get("error") or None)
        return IdentifyResult(
            identified=data.get("identified") is True,
            subject_id=data.get("user_id"),
            score=_score(data)
        )

    async def initialize(self) -> bool:
        """Open the scanner."""
        data = await self._call("POST", "/init")
        if not data.get("success"):
            raise DeviceUnavailable(data.get("error") or "Failed to initialize scanner")
        return True

    async def terminate(self) -> bool:
        """Close the scanner."""
        data = await self._call("POST", "/terminate")
        return data.get("success") is True

    async def list_enrolled(self) -> List[str]:
        """List subject ids whose templates are loaded in device memory."""
        data = await self._call("GET", "/enrolled")
        return [str(user_id) for user_id in data.get("enrolled") or []]

    async def clear(self) -> bool:
        """Remove every template from device memory."""
        data = await self._call("POST", "/clear")
        return data.get("success") is True

    async def add_template(self, subject_id: str, template: str) -> bool:
        """Load a stored template into device memory for 1:N identification."""
        data = await self._call(
            "POST", "/add-template", json={"userId": subject_id, "template": template}
        )
        if not data.get("success"):
            logger.warning(f"Failed to load template for {subject_id}: {data.get('error')}")
            return False
        return True


# Global client instance
_device_client: Optional[DeviceClient] = None


def get_device_client() -> DeviceClient:
    """
    Get the global device client instance.

    Returns:
        DeviceClient: The global device client instance
    """
    global _device_client
    if _device_client is None:
        _device_client = DeviceClient()
    return _device_client
