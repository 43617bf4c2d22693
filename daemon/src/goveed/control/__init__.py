"""
goveed Control - Settings persistence, device orchestration and scheduling
"""

from goveed.control.settings_store import SettingsStore
from goveed.control.orchestrator import (
    DeviceNotFoundError,
    DeviceOrchestrator,
    MissingApiKeyError,
    MissingSkuError,
)
from goveed.control.scheduler import SceneScheduler, ScheduledTask

__all__ = [
    "SettingsStore",
    "DeviceNotFoundError",
    "DeviceOrchestrator",
    "MissingApiKeyError",
    "MissingSkuError",
    "SceneScheduler",
    "ScheduledTask",
]
