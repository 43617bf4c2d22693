"""
Stored Settings - The document persisted by the settings store
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from goveed.models.devices import DeviceSceneOption
from goveed.models.scenes import Scene


class DeviceScenesCacheEntry(BaseModel):
    dynamic: List[DeviceSceneOption] = Field(default_factory=list)
    diy: List[DeviceSceneOption] = Field(default_factory=list)
    fetched_at: Optional[datetime] = None


class StoredSettings(BaseModel):
    """
    User settings consumed by the daemon

    rooms maps device id -> room name; room_names is the ordered list of
    rooms the user has defined.
    """

    api_key: Optional[str] = None
    lan_enabled: bool = True
    favorites: List[str] = Field(default_factory=list)
    rooms: Dict[str, str] = Field(default_factory=dict)
    room_names: List[str] = Field(default_factory=list)
    scenes: List[Scene] = Field(default_factory=list)
    device_scenes_cache: Dict[str, DeviceScenesCacheEntry] = Field(default_factory=dict)
    last_refresh_at: Optional[datetime] = None

    def find_scene(self, scene_id: str) -> Optional[Scene]:
        return next((scene for scene in self.scenes if scene.id == scene_id), None)
