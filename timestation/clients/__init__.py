"""Client modules for the fingerprint device service and the record store."""

from timestation.clients.device_client import (
    DeviceClient,
    get_device_client,
    is_match,
)

from timestation.clients.record_store_client import (
    RecordStoreClient,
    get_record_store_client,
)

__all__ = [
    "DeviceClient",
    "get_device_client",
    "is_match",
    "RecordStoreClient",
    "get_record_store_client",
]
