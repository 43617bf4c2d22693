"""
Transport Base Classes - Abstract interface for device transports

Defines the control surface shared by the LAN and cloud clients so the
orchestrator can drive either one the same way.
"""
from abc import ABC, abstractmethod
from typing import List

import structlog

from goveed.models import RGB, Device

logger = structlog.get_logger(__name__)


class TransportError(Exception):
    """Base exception for every transport failure"""

    pass


class DeviceTransport(ABC):
    """Base class for device transports"""

    def __init__(self, name: str):
        """
        Initialize transport

        Args:
            name: Human-readable transport name
        """
        self.name = name
        self.error_count = 0

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        """
        List devices reachable through this transport

        Returns:
            Devices reported by the transport
        """
        pass

    @abstractmethod
    async def set_power(self, device_id: str, on: bool) -> None:
        """
        Switch a device on or off

        Args:
            device_id: Vendor device id
            on: True for on, False for off
        """
        pass

    @abstractmethod
    async def set_brightness(self, device_id: str, level: float) -> None:
        """
        Set device brightness

        Args:
            device_id: Vendor device id
            level: Brightness percentage (0-100)
        """
        pass

    @abstractmethod
    async def set_color(self, device_id: str, color: RGB) -> None:
        """
        Set device color

        Args:
            device_id: Vendor device id
            color: RGB color
        """
        pass

    @abstractmethod
    async def set_color_temperature(self, device_id: str, kelvin: float) -> None:
        """
        Set white color temperature

        Args:
            device_id: Vendor device id
            kelvin: Color temperature in Kelvin
        """
        pass

    def get_statistics(self) -> dict:
        """
        Get transport statistics

        Returns:
            Dictionary with transport statistics
        """
        return {"name": self.name, "errors": self.error_count}
