"""
Scheduler - Timer-driven scene schedules

Every scene schedule with a next run gets one one-shot timer. Any change to
scenes or schedules throws all timers away and recreates them; after each
fire the full set is recomputed again, which re-arms daily and weekly
schedules for their next occurrence.
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

import structlog

from goveed.control.settings_store import SettingsStore
from goveed.logic.schedules import get_next_run
from goveed.models import SceneSchedule, ScheduleType

if TYPE_CHECKING:
    from goveed.logic.scenes import SceneEngine

logger = structlog.get_logger(__name__)


class ScheduledTask:
    """A one-shot timer that runs a callback at a given time"""

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[None]],
        run_at: datetime,
    ):
        """
        Initialize a scheduled task

        Args:
            name: Unique task name
            callback: Async function to call when the timer expires
            run_at: Local time to fire at
        """
        self.name = name
        self.callback = callback
        self.run_at = run_at
        self.fired = False
        self.errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def delay_seconds(self) -> float:
        return max(0.0, (self.run_at - datetime.now()).total_seconds())

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done() and not self.fired

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"schedule:{self.name}")

    async def _run(self) -> None:
        await asyncio.sleep(self.delay_seconds)
        self.fired = True

        try:
            await self.callback()
        except Exception as e:
            self.errors += 1
            logger.error(
                "scheduled_task_error",
                task=self.name,
                error=str(e),
                exc_info=True,
            )

    def cancel(self) -> None:
        """Cancel the timer if it has not fired yet; a running callback completes"""
        if self._task is not None and not self._task.done() and not self.fired:
            self._task.cancel()

    def get_statistics(self) -> dict:
        return {
            "name": self.name,
            "run_at": self.run_at.isoformat(),
            "delay_s": round(self.delay_seconds, 3),
            "fired": self.fired,
            "errors": self.errors,
        }


class SceneScheduler:
    """
    Arms timers for every scene schedule

    schedule_all() is serialized so overlapping mutations cannot leave
    duplicate timers behind.
    """

    def __init__(self, scene_engine: "SceneEngine", settings_store: SettingsStore):
        """
        Initialize the scheduler

        Args:
            scene_engine: Applies scenes and edits their schedules
            settings_store: Source of the scene list
        """
        self.scene_engine = scene_engine
        self.settings_store = settings_store

        self.tasks: Dict[str, ScheduledTask] = {}
        self._lock = asyncio.Lock()
        self._running = True

        # Statistics
        self.fire_count = 0
        self.failed_runs = 0
        self.reschedule_count = 0

        logger.info("scene_scheduler_initialized")

    @staticmethod
    def task_key(scene_id: str, schedule_id: str) -> str:
        return f"{scene_id}:{schedule_id}"

    def _cancel_all(self) -> None:
        for task in self.tasks.values():
            task.cancel()
        self.tasks.clear()

    async def schedule_all(self, now: Optional[datetime] = None) -> int:
        """
        Cancel every timer and arm one per schedule with a next run

        One-off schedules whose time has passed are removed from the stored
        scenes.

        Returns:
            Number of armed timers
        """
        async with self._lock:
            self._cancel_all()
            if not self._running:
                return 0

            if now is None:
                now = datetime.now()

            settings = await self.settings_store.load()
            expired: List[Tuple[str, str]] = []

            for scene in settings.scenes:
                for schedule in scene.schedules:
                    run_at = get_next_run(schedule, now)
                    if run_at is None:
                        if schedule.type == ScheduleType.ONCE:
                            expired.append((scene.id, schedule.id))
                        else:
                            logger.warning(
                                "schedule_invalid", scene_id=scene.id, schedule_id=schedule.id
                            )
                        continue

                    key = self.task_key(scene.id, schedule.id)
                    task = ScheduledTask(key, self._make_fire(scene.id, schedule, key), run_at)
                    self.tasks[key] = task
                    task.start()

            for scene_id, schedule_id in expired:
                await self.scene_engine.remove_schedule(scene_id, schedule_id)

            self.reschedule_count += 1
            logger.info("schedules_armed", timers=len(self.tasks), expired=len(expired))
            return len(self.tasks)

    def _make_fire(
        self, scene_id: str, schedule: SceneSchedule, key: str
    ) -> Callable[[], Awaitable[None]]:
        async def fire() -> None:
            await self._fire(scene_id, schedule, key)

        return fire

    async def _fire(self, scene_id: str, schedule: SceneSchedule, key: str) -> None:
        # Drop our own entry first so the reschedule below does not cancel us
        self.tasks.pop(key, None)
        self.fire_count += 1

        logger.info(
            "schedule_fired", scene_id=scene_id, schedule_id=schedule.id, type=schedule.type.value
        )

        try:
            await self.scene_engine.apply_scene(scene_id)
        except Exception as e:
            self.failed_runs += 1
            logger.error(
                "scheduled_scene_failed",
                scene_id=scene_id,
                schedule_id=schedule.id,
                error=str(e),
                exc_info=True,
            )

        if schedule.type == ScheduleType.ONCE:
            await self.scene_engine.remove_schedule(scene_id, schedule.id)

        if self._running:
            await self.schedule_all()

    async def stop(self) -> None:
        """Cancel all timers and stop re-arming"""
        self._running = False
        async with self._lock:
            count = len(self.tasks)
            self._cancel_all()
        logger.info("scene_scheduler_stopped", cancelled=count)

    def get_statistics(self) -> dict:
        return {
            "armed": len(self.tasks),
            "fire_count": self.fire_count,
            "failed_runs": self.failed_runs,
            "reschedule_count": self.reschedule_count,
            "timers": {name: task.get_statistics() for name, task in self.tasks.items()},
        }
