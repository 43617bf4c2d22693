"""
goveed - Pydantic models

Devices, scenes and the persisted settings document.
"""

from goveed.models.devices import (
    CAP_COLOR_SETTING,
    CAP_ON_OFF,
    CAP_ONLINE,
    CAP_RANGE,
    INSTANCE_BRIGHTNESS,
    INSTANCE_COLOR_RGB,
    INSTANCE_COLOR_TEMPERATURE,
    INSTANCE_POWER,
    RGB,
    Capability,
    CapabilityCommand,
    CapabilityRef,
    Device,
    DeviceSceneOption,
    DeviceSource,
    DeviceState,
    Diagnostics,
    ProviderStatus,
    normalize_device_id,
    resolve_capability,
)
from goveed.models.scenes import (
    ActionKind,
    ActionMode,
    Scene,
    SceneAction,
    SceneApplyResult,
    SceneSchedule,
    SceneTarget,
    ScheduleType,
    TargetKind,
)
from goveed.models.settings import DeviceScenesCacheEntry, StoredSettings

__all__ = [
    "CAP_COLOR_SETTING",
    "CAP_ON_OFF",
    "CAP_ONLINE",
    "CAP_RANGE",
    "INSTANCE_BRIGHTNESS",
    "INSTANCE_COLOR_RGB",
    "INSTANCE_COLOR_TEMPERATURE",
    "INSTANCE_POWER",
    "RGB",
    "Capability",
    "CapabilityCommand",
    "CapabilityRef",
    "Device",
    "DeviceSceneOption",
    "DeviceSource",
    "DeviceState",
    "Diagnostics",
    "ProviderStatus",
    "normalize_device_id",
    "resolve_capability",
    "ActionKind",
    "ActionMode",
    "Scene",
    "SceneAction",
    "SceneApplyResult",
    "SceneSchedule",
    "SceneTarget",
    "ScheduleType",
    "TargetKind",
    "DeviceScenesCacheEntry",
    "StoredSettings",
]
