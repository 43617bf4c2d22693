"""
Device Models - Devices, capabilities and state snapshots

A device may be reported by the cloud API, by local (LAN) discovery, or by
both. The merge key between the two is the normalized device id.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field

# Well-known capability identifiers
CAP_ON_OFF = "devices.capabilities.on_off"
CAP_RANGE = "devices.capabilities.range"
CAP_COLOR_SETTING = "devices.capabilities.color_setting"
CAP_ONLINE = "devices.capabilities.online"

INSTANCE_POWER = "powerSwitch"
INSTANCE_BRIGHTNESS = "brightness"
INSTANCE_COLOR_RGB = "colorRgb"
INSTANCE_COLOR_TEMPERATURE = "colorTemperatureK"

_NON_HEX = re.compile(r"[^a-f0-9]")


def normalize_device_id(device_id: str) -> str:
    """
    Normalize a device id for cross-transport matching

    Lower-cases the id and strips everything that is not a hex digit, so
    "AA:BB:CC" and "aabbcc" compare equal.
    """
    return _NON_HEX.sub("", device_id.lower())


class DeviceSource(str, Enum):
    """Which transport(s) reported a device"""

    CLOUD = "cloud"
    LOCAL = "local"
    HYBRID = "hybrid"


class ProviderStatus(str, Enum):
    MISSING_KEY = "missing-key"
    LOCAL = "local"
    CLOUD = "cloud"
    HYBRID = "hybrid"
    ERROR = "error"


class Capability(BaseModel):
    """A (type, instance) pair naming one controllable feature"""

    type: str
    instance: str
    parameters: Optional[Any] = None


class CapabilityRef(BaseModel):
    type: str
    instance: str


class CapabilityCommand(BaseModel):
    """A capability plus the value to send to it"""

    type: str
    instance: str
    value: Any = None

    def is_pair(self, type_: str, instance: str) -> bool:
        return self.type == type_ and self.instance == instance


def resolve_capability(
    capabilities: Optional[Sequence[Capability]], type_: str, instance: str
) -> CapabilityRef:
    """
    Resolve the capability a device actually advertises for a request

    Tries an exact (type, instance) match, then a type-only match, then an
    instance-only match. When nothing matches the requested pair is returned
    unchanged, so resolution never fails.
    """
    caps = list(capabilities or [])
    tiers = (
        lambda c: c.type == type_ and c.instance == instance,
        lambda c: c.type == type_,
        lambda c: c.instance == instance,
    )
    for matches in tiers:
        for cap in caps:
            if matches(cap):
                return CapabilityRef(type=cap.type, instance=cap.instance)
    return CapabilityRef(type=type_, instance=instance)


class RGB(BaseModel):
    r: int = Field(..., ge=0, le=255)
    g: int = Field(..., ge=0, le=255)
    b: int = Field(..., ge=0, le=255)

    def to_int(self) -> int:
        """Pack into a 24-bit integer (0xRRGGBB)"""
        return (self.r << 16) + (self.g << 8) + self.b

    @classmethod
    def from_int(cls, value: int) -> "RGB":
        return cls(r=(value >> 16) & 0xFF, g=(value >> 8) & 0xFF, b=value & 0xFF)


class Device(BaseModel):
    """
    A controllable light

    capabilities is None when no capability metadata is known (for example a
    device seen only through LAN discovery), which is different from a device
    that advertises an empty list.
    """

    id: str
    name: str
    model: str
    sku: Optional[str] = None
    lan_ip: Optional[str] = None
    lan_port: Optional[int] = None
    source: DeviceSource = DeviceSource.CLOUD
    capabilities: Optional[List[Capability]] = None
    supported_commands: List[str] = Field(default_factory=list)
    online: Optional[bool] = None

    @property
    def normalized_id(self) -> str:
        return normalize_device_id(self.id)

    def supports_instance(self, instance: str) -> bool:
        """True unless capability metadata exists and lacks the instance"""
        if self.capabilities is None:
            return True
        return any(cap.instance == instance for cap in self.capabilities)


class DeviceState(BaseModel):
    """Point-in-time device state; always fetched, never persisted"""

    online: Optional[bool] = None
    power: Optional[bool] = None
    brightness: Optional[int] = None
    color_rgb: Optional[RGB] = None
    color_temperature_k: Optional[int] = None


class DeviceSceneOption(BaseModel):
    """A device-native scene that can be replayed as a capability command"""

    name: str
    value: Any = None
    type: str
    instance: str

    def to_command(self) -> CapabilityCommand:
        return CapabilityCommand(type=self.type, instance=self.instance, value=self.value)


class Diagnostics(BaseModel):
    provider_status: ProviderStatus = ProviderStatus.MISSING_KEY
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
