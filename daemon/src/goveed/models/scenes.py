"""
Scene Models - User-defined scenes, their actions and schedules
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from goveed.models.devices import (
    CAP_COLOR_SETTING,
    CAP_ON_OFF,
    CAP_RANGE,
    INSTANCE_BRIGHTNESS,
    INSTANCE_COLOR_RGB,
    INSTANCE_COLOR_TEMPERATURE,
    INSTANCE_POWER,
    RGB,
    CapabilityCommand,
)

DEFAULT_BRIGHTNESS = 100
DEFAULT_COLOR_TEMPERATURE_K = 4000


class TargetKind(str, Enum):
    DEVICE = "device"
    ROOM = "room"
    FAVORITES = "favorites"


class SceneTarget(BaseModel):
    """What a scene applies to: one device, every device in a room, or favorites"""

    kind: TargetKind
    id: Optional[str] = None


class ActionKind(str, Enum):
    CAPABILITY = "capability"
    DEVICE_SCENE = "device_scene"


class SceneAction(BaseModel):
    """
    One step of a scene

    Either a well-known capability instance with a value, or an opaque
    device-native scene payload replayed as-is.
    """

    kind: ActionKind = ActionKind.CAPABILITY
    capability_instance: Optional[str] = None
    value: Any = None
    capability: Optional[CapabilityCommand] = None

    @model_validator(mode="after")
    def check_color(self) -> "SceneAction":
        if self.capability_instance != INSTANCE_COLOR_RGB:
            return self
        value = self.value
        if isinstance(value, int) and not isinstance(value, bool):
            if not 0 <= value <= 0xFFFFFF:
                raise ValueError("color must be a 24-bit RGB integer")
        elif isinstance(value, dict):
            try:
                RGB.model_validate(value)
            except ValidationError as e:
                raise ValueError(f"invalid color: {e.errors()[0]['msg']}") from e
        return self

    def to_command(self) -> CapabilityCommand:
        """Translate this action into the capability command to send"""
        if self.kind == ActionKind.DEVICE_SCENE and self.capability is not None:
            return self.capability

        instance = self.capability_instance
        value = self.value

        if instance == INSTANCE_BRIGHTNESS:
            level = value if isinstance(value, (int, float)) and not isinstance(value, bool) else DEFAULT_BRIGHTNESS
            return CapabilityCommand(type=CAP_RANGE, instance=INSTANCE_BRIGHTNESS, value=level)

        if instance == INSTANCE_COLOR_RGB:
            return CapabilityCommand(
                type=CAP_COLOR_SETTING, instance=INSTANCE_COLOR_RGB, value=_rgb_value(value)
            )

        if instance == INSTANCE_COLOR_TEMPERATURE:
            kelvin = value if isinstance(value, (int, float)) and not isinstance(value, bool) else DEFAULT_COLOR_TEMPERATURE_K
            return CapabilityCommand(
                type=CAP_COLOR_SETTING, instance=INSTANCE_COLOR_TEMPERATURE, value=kelvin
            )

        # Unrecognized instances fall back to switching the device on
        power = 0 if instance == INSTANCE_POWER and value == 0 else 1
        return CapabilityCommand(type=CAP_ON_OFF, instance=INSTANCE_POWER, value=power)


def _rgb_value(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, RGB):
        return value.to_int()
    if isinstance(value, dict):
        return RGB.model_validate(value).to_int()
    return 0xFFFFFF


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"


class SceneSchedule(BaseModel):
    """
    When a scene should run

    time is "HH:MM" local time. date ("YYYY-MM-DD") is used by once
    schedules, day_of_week (0 = Sunday .. 6 = Saturday) by weekly ones.
    """

    id: str
    type: ScheduleType
    time: str
    date: Optional[str] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)


class ActionMode(str, Enum):
    GLOBAL = "global"
    PER_DEVICE = "per_device"


class Scene(BaseModel):
    id: str
    name: str
    targets: List[SceneTarget] = Field(default_factory=list)
    action_mode: ActionMode = ActionMode.GLOBAL
    actions: List[SceneAction] = Field(default_factory=list)
    per_device_actions: Dict[str, List[SceneAction]] = Field(default_factory=dict)
    schedules: List[SceneSchedule] = Field(default_factory=list)

    def actions_for(self, device_id: str) -> List[SceneAction]:
        """Action list for one device, honoring the scene's action mode"""
        if self.action_mode == ActionMode.PER_DEVICE:
            return self.per_device_actions.get(device_id, [])
        return self.actions


class SceneApplyResult(BaseModel):
    applied_devices: int = 0
    skipped_actions: int = 0
