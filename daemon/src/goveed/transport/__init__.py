"""
goveed Transports - LAN and cloud device clients

Both clients implement the DeviceTransport interface:
- LanClient speaks the local UDP protocol (discovery, control, status)
- CloudClient talks to the vendor REST API with retry and backoff
"""

from goveed.transport.base import DeviceTransport, TransportError
from goveed.transport.cloud import CloudAPIError, CloudApiMode, CloudClient
from goveed.transport.lan import (
    LanClient,
    LanDeviceNotFoundError,
    LanParseError,
    LanTimeoutError,
    LanTransportError,
)

__all__ = [
    "DeviceTransport",
    "TransportError",
    "CloudAPIError",
    "CloudApiMode",
    "CloudClient",
    "LanClient",
    "LanDeviceNotFoundError",
    "LanParseError",
    "LanTimeoutError",
    "LanTransportError",
]
