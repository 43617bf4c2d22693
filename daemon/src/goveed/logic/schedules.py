"""
Schedule Calculations

Computes the next local run time of a scene schedule. All datetimes are
naive local time.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional

from goveed.models import SceneSchedule, ScheduleType


def parse_time(value: str) -> Optional[time]:
    """Parse "HH:MM" into a time, or None if malformed"""
    try:
        hours, minutes = (int(part) for part in value.split(":"))
        return time(hours, minutes)
    except (TypeError, ValueError):
        return None


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse "YYYY-MM-DD" into a date, or None if missing or malformed"""
    if not value:
        return None
    try:
        year, month, day = (int(part) for part in value.split("-"))
        return date(year, month, day)
    except (TypeError, ValueError):
        return None


def weekday_index(moment: datetime) -> int:
    """Day of week with 0 = Sunday .. 6 = Saturday"""
    return moment.isoweekday() % 7


def get_next_run(schedule: SceneSchedule, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute when a schedule should next fire

    Args:
        schedule: Scene schedule
        now: Reference time (defaults to the current local time)

    Returns:
        The next run strictly after now, or None if the schedule is
        malformed or is a one-off whose time has passed
    """
    if now is None:
        now = datetime.now()

    at = parse_time(schedule.time)
    if at is None:
        return None

    if schedule.type == ScheduleType.ONCE:
        day = parse_date(schedule.date)
        if day is None:
            return None
        target = datetime.combine(day, at)
        return target if target > now else None

    if schedule.type == ScheduleType.DAILY:
        target = datetime.combine(now.date(), at)
        if target <= now:
            target += timedelta(days=1)
        return target

    if schedule.type == ScheduleType.WEEKLY:
        day_of_week = schedule.day_of_week if schedule.day_of_week is not None else 0
        delta = (day_of_week - weekday_index(now) + 7) % 7
        target = datetime.combine(now.date() + timedelta(days=delta), at)
        if target <= now:
            target += timedelta(days=7)
        return target

    return None
