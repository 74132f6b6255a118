"""
Shared fixtures for the time station tests.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from timestation.models.internal_models import CaptureSample, DeviceHealth, Subject
from timestation.services.sessions import SessionRegistry


@pytest.fixture
def registry():
    """A fresh session registry per test."""
    return SessionRegistry()


@pytest.fixture
def samples():
    """Six distinct capture samples."""
    return [CaptureSample(data=f"c2FtcGxl{i}") for i in range(6)]


@pytest.fixture
def mock_device():
    """Device client mock with a connected scanner."""
    device = Mock()
    device.check_health = AsyncMock(return_value=DeviceHealth(connected=True))
    device.capture = AsyncMock()
    device.merge_templates = AsyncMock(return_value="TUVSR0VE")
    device.match = AsyncMock()
    device.busy = False
    return device


@pytest.fixture
def mock_store():
    """Record store client mock."""
    store = Mock()
    store.persist_template = AsyncMock(return_value={"success": True})
    store.fetch_template = AsyncMock(return_value="U1RPUkVE")
    store.record_event = AsyncMock()
    store.submit_leave = AsyncMock()
    store.lookup_subject = AsyncMock()
    return store


@pytest.fixture
def enrolled_subject():
    return Subject(subject_id="1001", first_name="Ada", last_name="Okafor", fingerprint_enrolled=True)


@pytest.fixture
def unenrolled_subject():
    return Subject(subject_id="1001", first_name="Ada", last_name="Okafor", fingerprint_enrolled=False)
