"""
Settings Store - JSON file persistence for user settings

The store holds the API key, LAN toggle, favorites, rooms, user scenes and
the device-scene cache. Loading never fails; a missing or corrupt file
yields defaults.
"""
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import structlog
from pydantic import ValidationError

from goveed.models import StoredSettings

logger = structlog.get_logger(__name__)


class SettingsStore:
    """
    Load/save the settings document

    Every write goes through update(), which holds a lock across the
    read-merge-write cycle and replaces the file atomically.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def load(self) -> StoredSettings:
        """
        Load settings from disk

        Returns:
            Stored settings, or defaults if the file is missing or invalid
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return StoredSettings.model_validate(raw)
        except FileNotFoundError:
            return StoredSettings()
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("settings_load_failed", path=str(self.path), error=str(e))
            return StoredSettings()

    async def save(self, **partial) -> StoredSettings:
        """
        Merge fields into the stored settings and persist them

        Args:
            **partial: StoredSettings fields to replace

        Returns:
            The merged settings as written
        """
        return await self.update(lambda current: partial)

    async def update(
        self, mutate: Callable[[StoredSettings], Optional[Dict[str, Any]]]
    ) -> StoredSettings:
        """
        Read, modify and write settings under the store lock

        Args:
            mutate: Receives the current settings, returns the fields to
                replace (None or {} leaves the file untouched)
        """
        async with self._lock:
            current = await self.load()
            changes = mutate(current)
            if not changes:
                return current

            merged = StoredSettings.model_validate({**current.model_dump(), **changes})
            self._write(merged)
            logger.debug("settings_saved", path=str(self.path), fields=sorted(changes))
            return merged

    def _write(self, settings: StoredSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(settings.model_dump_json(indent=2))
        os.replace(tmp, self.path)

    async def set_api_key(self, api_key: Optional[str]) -> StoredSettings:
        key = (api_key or "").strip() or None
        return await self.save(api_key=key)

    async def set_lan_enabled(self, enabled: bool) -> StoredSettings:
        return await self.save(lan_enabled=enabled)

    async def set_favorite(self, device_id: str, is_favorite: bool) -> StoredSettings:
        def mutate(settings: StoredSettings):
            favorites = [fav for fav in settings.favorites if fav != device_id]
            if is_favorite:
                favorites.append(device_id)
            return {"favorites": favorites}

        return await self.update(mutate)

    async def set_device_room(self, device_id: str, room_name: str) -> StoredSettings:
        """Assign a device to a room; a blank room name unassigns it"""
        room = room_name.strip()

        def mutate(settings: StoredSettings):
            rooms = dict(settings.rooms)
            if room:
                rooms[device_id] = room
            else:
                rooms.pop(device_id, None)
            return {"rooms": rooms}

        return await self.update(mutate)

    async def set_room_names(self, names: Iterable[str]) -> StoredSettings:
        """
        Replace the room list

        Names are trimmed, blank names dropped, duplicates removed and the
        result sorted. Device assignments to rooms no longer listed are
        removed.
        """
        unique = sorted({name.strip() for name in names if name.strip()})

        def mutate(settings: StoredSettings):
            rooms = {
                device_id: room for device_id, room in settings.rooms.items() if room in unique
            }
            return {"room_names": unique, "rooms": rooms}

        return await self.update(mutate)

    async def rename_room(self, old_name: str, new_name: str) -> StoredSettings:
        target = new_name.strip()
        if not target:
            return await self.load()

        def mutate(settings: StoredSettings):
            names = {name for name in settings.room_names if name != old_name}
            names.add(target)
            rooms = {
                device_id: target if room == old_name else room
                for device_id, room in settings.rooms.items()
            }
            return {"room_names": sorted(names), "rooms": rooms}

        return await self.update(mutate)

    async def delete_room(self, room_name: str) -> StoredSettings:
        def mutate(settings: StoredSettings):
            names = [name for name in settings.room_names if name != room_name]
            rooms = {
                device_id: room
                for device_id, room in settings.rooms.items()
                if room != room_name
            }
            return {"room_names": names, "rooms": rooms}

        return await self.update(mutate)
