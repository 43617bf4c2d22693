"""
API Schemas - Pydantic models for request/response validation
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from goveed.models import StoredSettings


# Device Schemas
class PowerRequest(BaseModel):
    on: bool


class BrightnessRequest(BaseModel):
    level: float = Field(..., ge=0, le=100)


class ColorRequest(BaseModel):
    r: int = Field(..., ge=0, le=255)
    g: int = Field(..., ge=0, le=255)
    b: int = Field(..., ge=0, le=255)


class ColorTemperatureRequest(BaseModel):
    kelvin: int = Field(..., ge=1000, le=10000)


class CapabilityRequest(BaseModel):
    type: str = Field(..., min_length=1)
    instance: str = Field(..., min_length=1)
    value: Any = None


class DeviceStatesRequest(BaseModel):
    device_ids: List[str] = Field(default_factory=list)


class FavoriteRequest(BaseModel):
    favorite: bool


class RoomAssignmentRequest(BaseModel):
    room: str = Field(default="", max_length=100)


class ControlResponse(BaseModel):
    device_id: str
    success: bool


# System Schemas
class ApiKeyRequest(BaseModel):
    api_key: Optional[str] = None


class LanRequest(BaseModel):
    enabled: bool


class RoomListRequest(BaseModel):
    rooms: List[str] = Field(default_factory=list)


class RoomRenameRequest(BaseModel):
    old_name: str = Field(..., min_length=1)
    new_name: str = Field(..., min_length=1)


class ConnectionTestResponse(BaseModel):
    success: bool
    device_count: int


class SettingsSummary(BaseModel):
    """User settings without the API key itself"""

    has_api_key: bool
    lan_enabled: bool
    favorites: List[str]
    rooms: Dict[str, str]
    room_names: List[str]
    last_refresh_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: StoredSettings) -> "SettingsSummary":
        return cls(
            has_api_key=bool(settings.api_key),
            lan_enabled=settings.lan_enabled,
            favorites=settings.favorites,
            rooms=settings.rooms,
            room_names=settings.room_names,
            last_refresh_at=settings.last_refresh_at,
        )
