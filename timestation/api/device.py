"""
Scanner status and administration endpoints.
"""

import structlog
from fastapi import APIRouter, Depends, Query

from timestation.clients.device_client import DeviceClient, get_device_client
from timestation.clients.record_store_client import RecordStoreClient, get_record_store_client
from timestation.models.api_models import (
    DeviceActionResponse,
    DeviceStatusResponse,
    EnrolledResponse,
    ErrorResponse,
    IdentifyResponse,
    SyncTemplatesResponse,
)
from timestation.services.device_monitor import DeviceMonitor, get_device_monitor, sync_templates

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/v1/device",
    tags=["device"],
    responses={409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)


@router.get("/status", response_model=DeviceStatusResponse)
async def device_status(
    refresh: bool = Query(False, description="Check the device now instead of using the last poll"),
    device: DeviceClient = Depends(get_device_client),
    monitor: DeviceMonitor = Depends(get_device_monitor)
) -> DeviceStatusResponse:
    """Scanner health, from the background monitor unless a refresh is requested."""
    status = monitor.last_status
    if refresh or status is None:
        status = await monitor.poll_once()

    return DeviceStatusResponse(
        connected=status.connected,
        mockMode=status.mock_mode,
        deviceOpened=status.device_opened,
        enrolledCount=status.enrolled_count,
        initialized=status.initialized,
        busy=device.busy,
        checkedAt=status.checked_at
    )


@router.post("/init", response_model=DeviceActionResponse)
async def init_device(device: DeviceClient = Depends(get_device_client)) -> DeviceActionResponse:
    await device.initialize()
    logger.info("Scanner initialized")
    return DeviceActionResponse(success=True, message="Scanner initialized")


@router.post("/terminate", response_model=DeviceActionResponse)
async def terminate_device(device: DeviceClient = Depends(get_device_client)) -> DeviceActionResponse:
    success = await device.terminate()
    logger.info("Scanner terminate requested", success=success)
    return DeviceActionResponse(success=success, message="Scanner closed" if success else "Scanner did not close")


@router.post("/clear", response_model=DeviceActionResponse)
async def clear_device(device: DeviceClient = Depends(get_device_client)) -> DeviceActionResponse:
    success = await device.clear()
    return DeviceActionResponse(success=success, message="Device templates cleared" if success else "Clear failed")


@router.post("/sync-templates", response_model=SyncTemplatesResponse)
async def sync_device_templates(
    device: DeviceClient = Depends(get_device_client),
    store: RecordStoreClient = Depends(get_record_store_client)
) -> SyncTemplatesResponse:
    """Reload device memory with every stored template."""
    result = await sync_templates(device, store)
    return SyncTemplatesResponse(**result)


@router.post("/identify", response_model=IdentifyResponse)
async def identify(device: DeviceClient = Depends(get_device_client)) -> IdentifyResponse:
    """Capture a finger and search the templates loaded in device memory."""
    sample = await device.capture()
    result = await device.identify(sample)
    logger.info("Identify completed", identified=result.identified, subject_id=result.subject_id)
    return IdentifyResponse(identified=result.identified, subjectId=result.subject_id, score=result.score)


@router.get("/enrolled", response_model=EnrolledResponse)
async def list_enrolled(device: DeviceClient = Depends(get_device_client)) -> EnrolledResponse:
    enrolled = await device.list_enrolled()
    return EnrolledResponse(enrolled=enrolled, count=len(enrolled))
