"""
Unit tests for SceneScheduler

Tests one-shot timers, arming and re-arming of scene schedules, expired
one-off cleanup and the fire path.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from goveed.control.scheduler import SceneScheduler, ScheduledTask
from goveed.models import Scene, SceneSchedule, ScheduleType

NOW = datetime(2024, 1, 10, 12, 0)


def once(schedule_id="o1", at="18:00", on="2024-01-10"):
    return SceneSchedule(id=schedule_id, type=ScheduleType.ONCE, time=at, date=on)


def daily(schedule_id="d1", at="07:00"):
    return SceneSchedule(id=schedule_id, type=ScheduleType.DAILY, time=at)


def weekly(schedule_id="w1", at="07:00", day=1):
    return SceneSchedule(id=schedule_id, type=ScheduleType.WEEKLY, time=at, day_of_week=day)


@pytest.fixture
def mock_engine():
    """Scene engine stand-in."""
    engine = MagicMock()
    engine.apply_scene = AsyncMock()
    engine.remove_schedule = AsyncMock()
    return engine


@pytest_asyncio.fixture
async def isolated_scheduler(mock_engine, settings_store):
    """Scheduler over a mock engine, stopped after the test."""
    scheduler = SceneScheduler(mock_engine, settings_store)
    yield scheduler
    await scheduler.stop()


class TestScheduledTask:
    """Tests for ScheduledTask."""

    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        """Test that the callback runs once the run time is reached."""
        callback = AsyncMock()
        task = ScheduledTask("t", callback, datetime.now() + timedelta(milliseconds=20))

        task.start()
        assert task.pending is True
        await asyncio.sleep(0.1)

        callback.assert_awaited_once()
        assert task.fired is True
        assert task.pending is False

    @pytest.mark.asyncio
    async def test_past_run_time_fires_immediately(self):
        """Test that a run time in the past has zero delay."""
        task = ScheduledTask("t", AsyncMock(), datetime.now() - timedelta(hours=1))
        assert task.delay_seconds == 0.0

    @pytest.mark.asyncio
    async def test_cancel_before_fire(self):
        """Test that a cancelled timer never runs its callback."""
        callback = AsyncMock()
        task = ScheduledTask("t", callback, datetime.now() + timedelta(milliseconds=50))

        task.start()
        task.cancel()
        await asyncio.sleep(0.1)

        callback.assert_not_awaited()
        assert task.fired is False

    @pytest.mark.asyncio
    async def test_cancel_after_fire_lets_callback_finish(self):
        """Test that cancelling during the callback does not interrupt it."""
        release = asyncio.Event()
        finished = []

        async def callback():
            await release.wait()
            finished.append(True)

        task = ScheduledTask("t", callback, datetime.now())
        task.start()
        await asyncio.sleep(0.01)

        task.cancel()
        release.set()
        await asyncio.sleep(0.01)

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_callback_errors_are_counted(self):
        """Test that a failing callback is logged and counted."""
        task = ScheduledTask("t", AsyncMock(side_effect=RuntimeError("boom")), datetime.now())

        task.start()
        await asyncio.sleep(0.01)

        assert task.errors == 1
        assert task.get_statistics()["errors"] == 1


class TestScheduleAll:
    """Tests for arming timers from stored scenes."""

    @pytest.mark.asyncio
    async def test_arms_one_timer_per_schedule(self, isolated_scheduler, settings_store):
        """Test that every schedule with a next run gets a timer."""
        await settings_store.save(
            scenes=[
                Scene(id="s1", name="Morning", schedules=[daily(), weekly()]),
                Scene(id="s2", name="Party", schedules=[once()]),
            ]
        )

        armed = await isolated_scheduler.schedule_all(NOW)

        assert armed == 3
        assert sorted(isolated_scheduler.tasks) == ["s1:d1", "s1:w1", "s2:o1"]
        assert isolated_scheduler.tasks["s2:o1"].run_at == datetime(2024, 1, 10, 18, 0)
        assert isolated_scheduler.tasks["s1:w1"].run_at == datetime(2024, 1, 15, 7, 0)

    @pytest.mark.asyncio
    async def test_expired_once_is_removed(self, isolated_scheduler, settings_store, mock_engine):
        """Test that past one-offs are dropped from the scene."""
        await settings_store.save(
            scenes=[Scene(id="s1", name="Old", schedules=[once(on="2024-01-01"), daily()])]
        )

        armed = await isolated_scheduler.schedule_all(NOW)

        assert armed == 1
        mock_engine.remove_schedule.assert_awaited_once_with("s1", "o1")

    @pytest.mark.asyncio
    async def test_invalid_recurring_schedule_is_kept(self, isolated_scheduler, settings_store, mock_engine):
        """Test that a malformed daily schedule is skipped but not deleted."""
        await settings_store.save(scenes=[Scene(id="s1", name="Bad", schedules=[daily(at="99:99")])])

        assert await isolated_scheduler.schedule_all(NOW) == 0
        mock_engine.remove_schedule.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rearming_cancels_previous_timers(self, isolated_scheduler, settings_store):
        """Test that recomputation replaces every timer."""
        await settings_store.save(scenes=[Scene(id="s1", name="Morning", schedules=[daily()])])

        await isolated_scheduler.schedule_all(NOW)
        first = isolated_scheduler.tasks["s1:d1"]
        await isolated_scheduler.schedule_all(NOW)
        await asyncio.sleep(0)

        assert isolated_scheduler.tasks["s1:d1"] is not first
        assert first.pending is False
        assert len(isolated_scheduler.tasks) == 1
        assert isolated_scheduler.reschedule_count == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_and_disables(self, isolated_scheduler, settings_store):
        """Test that a stopped scheduler arms nothing."""
        await settings_store.save(scenes=[Scene(id="s1", name="Morning", schedules=[daily()])])
        await isolated_scheduler.schedule_all(NOW)

        await isolated_scheduler.stop()

        assert isolated_scheduler.tasks == {}
        assert await isolated_scheduler.schedule_all(NOW) == 0


class TestFire:
    """Tests for the fire path."""

    @pytest.mark.asyncio
    async def test_once_fire_applies_and_removes(self, isolated_scheduler, mock_engine):
        """Test that a one-off applies its scene and is removed."""
        await isolated_scheduler._fire("s1", once(), "s1:o1")

        mock_engine.apply_scene.assert_awaited_once_with("s1")
        mock_engine.remove_schedule.assert_awaited_once_with("s1", "o1")
        assert isolated_scheduler.fire_count == 1
        assert isolated_scheduler.reschedule_count == 1

    @pytest.mark.asyncio
    async def test_daily_fire_keeps_schedule(self, isolated_scheduler, mock_engine):
        """Test that recurring schedules stay in place after firing."""
        await isolated_scheduler._fire("s1", daily(), "s1:d1")

        mock_engine.apply_scene.assert_awaited_once_with("s1")
        mock_engine.remove_schedule.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_run_still_reschedules(self, isolated_scheduler, mock_engine):
        """Test that a failing scene is counted and timers are re-armed."""
        mock_engine.apply_scene.side_effect = RuntimeError("cloud down")

        await isolated_scheduler._fire("s1", daily(), "s1:d1")

        assert isolated_scheduler.failed_runs == 1
        assert isolated_scheduler.reschedule_count == 1

    @pytest.mark.asyncio
    async def test_timer_fires_and_rearms(self, isolated_scheduler, settings_store, mock_engine):
        """Test the full timer cycle: fire, apply, recompute."""
        await settings_store.save(scenes=[Scene(id="s1", name="Morning", schedules=[daily()])])
        soon = [datetime.now() + timedelta(milliseconds=20)]

        def next_run(schedule, now=None):
            return soon.pop() if soon else datetime.now() + timedelta(hours=1)

        with patch("goveed.control.scheduler.get_next_run", side_effect=next_run):
            await isolated_scheduler.schedule_all()
            await asyncio.sleep(0.15)

        mock_engine.apply_scene.assert_awaited_once_with("s1")
        assert isolated_scheduler.fire_count == 1
        assert list(isolated_scheduler.tasks) == ["s1:d1"]
        assert isolated_scheduler.tasks["s1:d1"].pending is True


class TestSceneEngineIntegration:
    """Scheduler driven by scene changes."""

    @pytest.mark.asyncio
    async def test_saving_a_scene_arms_its_schedules(self, scene_engine, scene_scheduler):
        """Test that the change callback re-arms timers."""
        scene_engine.set_change_callback(scene_scheduler.schedule_all)

        await scene_engine.save_scene(Scene(id="s1", name="Morning", schedules=[daily(), weekly()]))
        assert sorted(scene_scheduler.tasks) == ["s1:d1", "s1:w1"]

        await scene_engine.delete_scene("s1")
        assert scene_scheduler.tasks == {}

    @pytest.mark.asyncio
    async def test_expired_once_removed_from_store(self, scene_engine, scene_scheduler, settings_store):
        """Test that expired one-offs are deleted from the settings file."""
        await settings_store.save(
            scenes=[Scene(id="s1", name="Old", schedules=[once(on="2000-01-01"), daily()])]
        )

        await scene_scheduler.schedule_all()

        stored = (await settings_store.load()).find_scene("s1")
        assert [s.id for s in stored.schedules] == ["d1"]
