"""
Tests for tracing helpers and error-to-status mapping.
"""

import pytest

from timestation.api.errors import DEFAULT_STATUS, status_for
from timestation.errors import (
    CaptureFailed,
    CaptureTimeout,
    DeviceBusy,
    FingerprintMismatch,
    NotEnrolled,
    StoreUnavailable,
)
from timestation.observability import record_verification_metrics, trace_function


class TestTraceFunction:
    """trace_function is transparent until observability is set up."""

    @pytest.mark.asyncio
    async def test_async_passthrough(self):
        @trace_function("test.op")
        async def operation(value):
            return value * 2

        assert await operation(21) == 42

    def test_sync_passthrough(self):
        @trace_function()
        def operation():
            raise NotEnrolled()

        with pytest.raises(NotEnrolled):
            operation()

    def test_metrics_noop_without_setup(self):
        record_verification_metrics(
            success=True, processing_time=0.1, score=87.0, subject_id="1001", action="clock_in"
        )


class TestStatusMapping:
    """Errors map to HTTP status through their class hierarchy."""

    @pytest.mark.parametrize("error,expected", [
        (NotEnrolled(), 404),
        (StoreUnavailable(), 503),
        (DeviceBusy(), 409),
        (CaptureTimeout(), 408),
        (CaptureFailed(), DEFAULT_STATUS),
        (FingerprintMismatch(), DEFAULT_STATUS),
    ])
    def test_status_for(self, error, expected):
        assert status_for(error) == expected
