"""
goveed Scene Logic

- Schedule calculations (next run of once/daily/weekly schedules)
- Scene engine for storing user scenes and applying them to devices
"""

from goveed.logic.schedules import get_next_run
from goveed.logic.scenes import SceneEngine, resolve_targets

__all__ = [
    "get_next_run",
    "SceneEngine",
    "resolve_targets",
]
