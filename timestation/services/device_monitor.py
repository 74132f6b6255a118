"""Background scanner health polling and device template sync."""

import asyncio
import logging
from typing import Dict, Optional

from timestation.clients.device_client import DeviceClient, get_device_client
from timestation.clients.record_store_client import RecordStoreClient
from timestation.config import settings
from timestation.errors import FingerprintError
from timestation.models.internal_models import DeviceHealth

logger = logging.getLogger(__name__)


class DeviceMonitor:
    """
    Polls the device service health endpoint on an interval.

    Keeps the last status for the kiosk status display and logs when the
    scanner connects or disconnects.
    """

    def __init__(self, device: Optional[DeviceClient] = None, interval: Optional[float] = None):
        self.device = device or get_device_client()
        self.interval = interval or settings.device_poll_interval
        self.last_status: Optional[DeviceHealth] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> DeviceHealth:
        status = await self.device.check_health()
        previous = self.last_status
        if previous is None or previous.connected != status.connected:
            if status.connected:
                logger.info(f"Fingerprint scanner connected (mock_mode={status.mock_mode})")
            else:
                logger.warning("Fingerprint scanner not connected")
        self.last_status = status
        return status

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Device health poll failed: {e}")
                self.last_status = DeviceHealth(connected=False)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started device health monitor (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped device health monitor")


async def sync_templates(device: DeviceClient, store: RecordStoreClient) -> Dict[str, int]:
    """
    Load every stored template into device memory for 1:N identification.

    Returns:
        Counts of loaded templates and of templates the device rejected

    Raises:
        StoreUnavailable: Templates could not be listed
        DeviceUnavailable: Device memory could not be cleared
    """
    templates = await store.list_templates()
    await device.clear()

    loaded = 0
    errors = 0
    for subject_id, template in templates:
        try:
            ok = await device.add_template(subject_id, template)
        except FingerprintError as e:
            logger.warning(f"Failed to load template for {subject_id}: {e}")
            ok = False
        if ok:
            loaded += 1
        else:
            errors += 1

    logger.info(f"Synced {loaded} templates to device ({errors} errors)")
    return {"loaded": loaded, "errors": errors}


# Global monitor instance
_device_monitor: Optional[DeviceMonitor] = None


def get_device_monitor() -> DeviceMonitor:
    """Get the global device monitor instance."""
    global _device_monitor
    if _device_monitor is None:
        _device_monitor = DeviceMonitor()
    return _device_monitor
