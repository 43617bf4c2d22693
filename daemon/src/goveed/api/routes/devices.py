"""
Devices API Routes - Device list, control, state and device-native scenes
"""
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException

from goveed.api import get_daemon_instance
from goveed.api.errors import to_http_exception
from goveed.api.schemas import (
    BrightnessRequest,
    CapabilityRequest,
    ColorRequest,
    ColorTemperatureRequest,
    ControlResponse,
    DeviceStatesRequest,
    FavoriteRequest,
    PowerRequest,
    RoomAssignmentRequest,
    SettingsSummary,
)
from goveed.models import (
    RGB,
    CapabilityCommand,
    Device,
    DeviceScenesCacheEntry,
    DeviceState,
)
from goveed.transport.base import TransportError

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_orchestrator():
    daemon = get_daemon_instance()
    if not daemon or not daemon.orchestrator:
        raise HTTPException(status_code=503, detail="Device orchestrator not available")
    return daemon.orchestrator


def get_known_device(device_id: str) -> Device:
    device = get_orchestrator().find_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.get("/", response_model=List[Device])
async def list_devices():
    """List devices, refreshing if none are known yet"""
    return await get_orchestrator().list_devices()


@router.post("/refresh", response_model=List[Device])
async def refresh_devices():
    """Rebuild the device list from LAN discovery and the cloud (never fails)"""
    daemon = get_daemon_instance()
    if not daemon:
        raise HTTPException(status_code=503, detail="Daemon not available")
    return await daemon.refresh_devices()


@router.get("/power", response_model=Dict[str, bool])
async def get_power_snapshot():
    """Tracked power state for every known device"""
    return get_orchestrator().get_power_snapshot()


@router.post("/states", response_model=Dict[str, DeviceState])
async def get_device_states(request: DeviceStatesRequest):
    """Fetch state for several devices; devices that fail are omitted"""
    orchestrator = get_orchestrator()
    device_ids = request.device_ids or [device.id for device in orchestrator.devices]
    return await orchestrator.get_device_states(device_ids)


@router.get("/{device_id}/state", response_model=DeviceState)
async def get_device_state(device_id: str):
    try:
        return await get_orchestrator().get_device_state(device_id)
    except TransportError as e:
        raise to_http_exception(e) from e


@router.put("/{device_id}/power", response_model=ControlResponse)
async def set_power(device_id: str, request: PowerRequest):
    device = get_known_device(device_id)
    try:
        success = await get_orchestrator().set_power(device.id, request.on, propagate_error=True)
    except TransportError as e:
        raise to_http_exception(e) from e
    return ControlResponse(device_id=device.id, success=success)


@router.put("/{device_id}/brightness", response_model=ControlResponse)
async def set_brightness(device_id: str, request: BrightnessRequest):
    device = get_known_device(device_id)
    try:
        success = await get_orchestrator().set_brightness(
            device.id, request.level, propagate_error=True
        )
    except TransportError as e:
        raise to_http_exception(e) from e
    return ControlResponse(device_id=device.id, success=success)


@router.put("/{device_id}/color", response_model=ControlResponse)
async def set_color(device_id: str, request: ColorRequest):
    device = get_known_device(device_id)
    color = RGB(r=request.r, g=request.g, b=request.b)
    try:
        success = await get_orchestrator().set_color(device.id, color, propagate_error=True)
    except TransportError as e:
        raise to_http_exception(e) from e
    return ControlResponse(device_id=device.id, success=success)


@router.put("/{device_id}/color-temperature", response_model=ControlResponse)
async def set_color_temperature(device_id: str, request: ColorTemperatureRequest):
    device = get_known_device(device_id)
    try:
        success = await get_orchestrator().set_color_temperature(
            device.id, request.kelvin, propagate_error=True
        )
    except TransportError as e:
        raise to_http_exception(e) from e
    return ControlResponse(device_id=device.id, success=success)


@router.put("/{device_id}/capability", response_model=ControlResponse)
async def control_capability(device_id: str, request: CapabilityRequest):
    """Send an arbitrary capability command (including device-native scenes)"""
    device = get_known_device(device_id)
    command = CapabilityCommand(type=request.type, instance=request.instance, value=request.value)
    try:
        success = await get_orchestrator().control_capability(
            device.id, command, propagate_error=True
        )
    except TransportError as e:
        raise to_http_exception(e) from e
    return ControlResponse(device_id=device.id, success=success)


@router.get("/{device_id}/scenes", response_model=Optional[DeviceScenesCacheEntry])
async def get_cached_device_scenes(device_id: str):
    """Device-native scenes from the last fetch (null if never fetched)"""
    return await get_orchestrator().get_cached_device_scenes(device_id)


@router.post("/{device_id}/scenes/fetch", response_model=DeviceScenesCacheEntry)
async def fetch_device_scenes(device_id: str):
    """Fetch dynamic and DIY scenes from the cloud and cache them"""
    device = get_known_device(device_id)
    try:
        return await get_orchestrator().fetch_device_scenes(device.id)
    except TransportError as e:
        raise to_http_exception(e) from e


@router.put("/{device_id}/favorite", response_model=SettingsSummary)
async def set_favorite(device_id: str, request: FavoriteRequest):
    settings = await get_orchestrator().settings_store.set_favorite(device_id, request.favorite)
    logger.info("favorite_updated", device_id=device_id, favorite=request.favorite)
    return SettingsSummary.from_settings(settings)


@router.put("/{device_id}/room", response_model=SettingsSummary)
async def set_device_room(device_id: str, request: RoomAssignmentRequest):
    settings = await get_orchestrator().settings_store.set_device_room(device_id, request.room)
    logger.info("device_room_updated", device_id=device_id, room=request.room.strip() or None)
    return SettingsSummary.from_settings(settings)
