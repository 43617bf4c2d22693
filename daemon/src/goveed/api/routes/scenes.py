"""
Scenes API Routes - CRUD operations for user scenes and scene application
"""
from typing import List

import structlog
from fastapi import APIRouter, HTTPException

from goveed.api import get_daemon_instance
from goveed.api.errors import to_http_exception
from goveed.models import Scene, SceneApplyResult
from goveed.transport.base import TransportError

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_scene_engine():
    daemon = get_daemon_instance()
    if not daemon or not daemon.scene_engine:
        raise HTTPException(status_code=503, detail="Scene engine not available")
    return daemon.scene_engine


@router.get("/", response_model=List[Scene])
async def list_scenes():
    """List all stored scenes"""
    return await get_scene_engine().list_scenes()


@router.get("/{scene_id}", response_model=Scene)
async def get_scene(scene_id: str):
    """Get a specific scene"""
    scene = await get_scene_engine().get_scene(scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="Scene not found")
    return scene


@router.put("/{scene_id}", response_model=Scene)
async def save_scene(scene_id: str, scene: Scene):
    """Create or replace a scene; schedules are re-armed"""
    if scene.id != scene_id:
        raise HTTPException(status_code=400, detail="Scene id does not match the URL")
    await get_scene_engine().save_scene(scene)
    return scene


@router.delete("/{scene_id}", status_code=204)
async def delete_scene(scene_id: str):
    """Delete a scene and its schedules"""
    if not await get_scene_engine().delete_scene(scene_id):
        raise HTTPException(status_code=404, detail="Scene not found")


@router.post("/{scene_id}/duplicate", response_model=Scene, status_code=201)
async def duplicate_scene(scene_id: str):
    """Copy a scene under a new id"""
    copy = await get_scene_engine().duplicate_scene(scene_id)
    if copy is None:
        raise HTTPException(status_code=404, detail="Scene not found")
    return copy


@router.post("/{scene_id}/apply", response_model=SceneApplyResult)
async def apply_scene(scene_id: str):
    """
    Apply a scene to its targets now

    Returns the number of devices that received actions and the number of
    actions skipped because the device does not support them.
    """
    engine = get_scene_engine()
    if await engine.get_scene(scene_id) is None:
        raise HTTPException(status_code=404, detail="Scene not found")

    try:
        result = await engine.apply_scene(scene_id)
    except TransportError as e:
        logger.error("scene_apply_failed", scene_id=scene_id, error=str(e))
        raise to_http_exception(e) from e
    return result
