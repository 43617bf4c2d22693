"""
Scene Engine

Stores user scenes in the settings document and applies them to their
target devices. Application is sequential with a fixed delay between
commands to stay under the vendor's rate limits.
"""
import asyncio
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

import structlog

from goveed.control.settings_store import SettingsStore
from goveed.models import (
    CapabilityCommand,
    Device,
    Scene,
    SceneApplyResult,
    StoredSettings,
    TargetKind,
)
from goveed.transport.base import TransportError
from goveed.transport.cloud import CloudAPIError

if TYPE_CHECKING:
    from goveed.control.orchestrator import DeviceOrchestrator

logger = structlog.get_logger(__name__)

COMMAND_DELAY = 0.12
RATE_LIMIT_BACKOFF = 0.8


def is_rate_limit_error(error: Exception) -> bool:
    if isinstance(error, CloudAPIError):
        return error.is_rate_limited
    message = str(error).lower()
    return "429" in message or "rate" in message


def resolve_targets(
    scene: Scene, devices: Iterable[Device], settings: StoredSettings
) -> Set[str]:
    """
    Collect the device ids a scene applies to

    Union of explicit device targets, members of targeted rooms and, if a
    favorites target is present, every favorite.
    """
    devices = list(devices)
    targets: Set[str] = set()

    for target in scene.targets:
        if target.kind == TargetKind.DEVICE and target.id:
            targets.add(target.id)
        elif target.kind == TargetKind.ROOM and target.id:
            targets.update(
                device.id for device in devices if settings.rooms.get(device.id) == target.id
            )
        elif target.kind == TargetKind.FAVORITES:
            targets.update(settings.favorites)

    return targets


class SceneEngine:
    """
    Scene management engine

    Scene CRUD persists through the settings store and notifies the change
    callback (the scheduler re-arms its timers from it). Runs of the same
    scene are serialized; different scenes may run concurrently.
    """

    def __init__(
        self,
        orchestrator: "DeviceOrchestrator",
        settings_store: SettingsStore,
        command_delay: float = COMMAND_DELAY,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF,
    ):
        """
        Initialize scene engine

        Args:
            orchestrator: Used for the device list and capability dispatch
            settings_store: Where scenes, rooms and favorites live
            command_delay: Seconds to wait after each sent command
            rate_limit_backoff: Seconds to wait before retrying a rate-limited command
        """
        self.orchestrator = orchestrator
        self.settings_store = settings_store
        self.command_delay = command_delay
        self.rate_limit_backoff = rate_limit_backoff

        self._on_change: Optional[Callable[[], Awaitable[None]]] = None
        self._run_locks: Dict[str, asyncio.Lock] = {}

        # Statistics
        self.scenes_applied = 0
        self.commands_sent = 0
        self.actions_skipped = 0
        self.rate_limit_retries = 0

        logger.info("scene_engine_initialized")

    def set_change_callback(self, callback: Optional[Callable[[], Awaitable[None]]]) -> None:
        self._on_change = callback

    async def _notify_change(self) -> None:
        if self._on_change is not None:
            await self._on_change()

    # Scene management

    async def list_scenes(self) -> List[Scene]:
        settings = await self.settings_store.load()
        return settings.scenes

    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        settings = await self.settings_store.load()
        return settings.find_scene(scene_id)

    async def save_scene(self, scene: Scene) -> List[Scene]:
        """Insert a scene, or replace the stored scene with the same id"""

        def mutate(settings: StoredSettings):
            scenes = list(settings.scenes)
            for index, existing in enumerate(scenes):
                if existing.id == scene.id:
                    scenes[index] = scene
                    break
            else:
                scenes.append(scene)
            return {"scenes": scenes}

        settings = await self.settings_store.update(mutate)
        logger.info("scene_saved", scene_id=scene.id, scene_name=scene.name)
        await self._notify_change()
        return settings.scenes

    async def delete_scene(self, scene_id: str) -> bool:
        """
        Delete a scene

        Returns:
            True if the scene existed
        """
        existed = False

        def mutate(settings: StoredSettings):
            nonlocal existed
            scenes = [scene for scene in settings.scenes if scene.id != scene_id]
            existed = len(scenes) != len(settings.scenes)
            return {"scenes": scenes} if existed else None

        await self.settings_store.update(mutate)
        if not existed:
            logger.warning("scene_not_found", scene_id=scene_id)
            return False

        logger.info("scene_deleted", scene_id=scene_id)
        self._run_locks.pop(scene_id, None)
        await self._notify_change()
        return True

    async def duplicate_scene(self, scene_id: str) -> Optional[Scene]:
        """
        Copy a scene under a new id

        Returns:
            The new scene, or None if the source does not exist
        """
        copy: Optional[Scene] = None

        def mutate(settings: StoredSettings):
            nonlocal copy
            source = settings.find_scene(scene_id)
            if source is None:
                return None
            copy = source.model_copy(
                deep=True, update={"id": str(uuid.uuid4()), "name": f"{source.name} Copy"}
            )
            return {"scenes": [*settings.scenes, copy]}

        await self.settings_store.update(mutate)
        if copy is None:
            logger.warning("scene_not_found", scene_id=scene_id)
            return None

        logger.info("scene_duplicated", scene_id=scene_id, new_scene_id=copy.id)
        await self._notify_change()
        return copy

    async def remove_schedule(self, scene_id: str, schedule_id: str) -> None:
        """Drop one schedule from a scene without notifying listeners"""

        def mutate(settings: StoredSettings):
            scenes = []
            for scene in settings.scenes:
                if scene.id == scene_id:
                    scene = scene.model_copy(
                        update={
                            "schedules": [s for s in scene.schedules if s.id != schedule_id]
                        }
                    )
                scenes.append(scene)
            return {"scenes": scenes}

        await self.settings_store.update(mutate)
        logger.info("scene_schedule_removed", scene_id=scene_id, schedule_id=schedule_id)

    # Application

    async def apply_scene(self, scene_id: str) -> SceneApplyResult:
        """
        Apply a stored scene to its targets

        Args:
            scene_id: Scene to apply

        Returns:
            Devices that received at least one action and actions skipped as
            unsupported; (0, 0) for an unknown scene

        Raises:
            TransportError: A command failed (after one retry if rate limited)
        """
        lock = self._run_locks.setdefault(scene_id, asyncio.Lock())
        async with lock:
            return await self._apply(scene_id)

    async def _apply(self, scene_id: str) -> SceneApplyResult:
        settings = await self.settings_store.load()
        scene = settings.find_scene(scene_id)
        if scene is None:
            logger.warning("scene_not_found", scene_id=scene_id)
            return SceneApplyResult()

        devices = await self.orchestrator.list_devices()
        targets = resolve_targets(scene, devices, settings)
        result = SceneApplyResult()

        for device in devices:
            if device.id not in targets:
                continue

            actions = scene.actions_for(device.id)
            if not actions:
                continue

            result.applied_devices += 1
            for action in actions:
                command = action.to_command()
                if not device.supports_instance(command.instance):
                    result.skipped_actions += 1
                    logger.debug(
                        "scene_action_unsupported",
                        scene_id=scene_id,
                        device_id=device.id,
                        instance=command.instance,
                    )
                    continue

                await self._send(device.id, command)
                await asyncio.sleep(self.command_delay)

        self.scenes_applied += 1
        self.actions_skipped += result.skipped_actions

        logger.info(
            "scene_applied",
            scene_id=scene_id,
            scene_name=scene.name,
            applied_devices=result.applied_devices,
            skipped_actions=result.skipped_actions,
        )
        return result

    async def _send(self, device_id: str, command: CapabilityCommand) -> None:
        try:
            await self.orchestrator.control_capability(device_id, command, propagate_error=True)
        except TransportError as e:
            if not is_rate_limit_error(e):
                raise
            self.rate_limit_retries += 1
            logger.warning("scene_command_rate_limited", device_id=device_id, error=str(e))
            await asyncio.sleep(self.rate_limit_backoff)
            await self.orchestrator.control_capability(device_id, command, propagate_error=True)
        self.commands_sent += 1

    def get_statistics(self) -> dict:
        return {
            "scenes_applied": self.scenes_applied,
            "commands_sent": self.commands_sent,
            "actions_skipped": self.actions_skipped,
            "rate_limit_retries": self.rate_limit_retries,
        }
