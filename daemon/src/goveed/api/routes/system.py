"""
System API Routes - Diagnostics, API key, LAN toggle and rooms
"""
import structlog
from fastapi import APIRouter, HTTPException

from goveed.api import get_daemon_instance
from goveed.api.errors import to_http_exception
from goveed.api.schemas import (
    ApiKeyRequest,
    ConnectionTestResponse,
    LanRequest,
    RoomListRequest,
    RoomRenameRequest,
    SettingsSummary,
)
from goveed.models import Diagnostics
from goveed.transport.base import TransportError

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_orchestrator():
    daemon = get_daemon_instance()
    if not daemon or not daemon.orchestrator:
        raise HTTPException(status_code=503, detail="Device orchestrator not available")
    return daemon.orchestrator


@router.get("/diagnostics", response_model=Diagnostics)
async def get_diagnostics():
    """Which provider is serving requests and the last recorded error"""
    return get_orchestrator().get_diagnostics()


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection():
    """List cloud devices with the stored API key"""
    try:
        count = await get_orchestrator().test_connection()
    except TransportError as e:
        raise to_http_exception(e) from e
    return ConnectionTestResponse(success=True, device_count=count)


@router.get("/settings", response_model=SettingsSummary)
async def get_settings_summary():
    settings = await get_orchestrator().settings_store.load()
    return SettingsSummary.from_settings(settings)


@router.put("/api-key", response_model=SettingsSummary)
async def set_api_key(request: ApiKeyRequest):
    """Store (or clear, with a blank key) the cloud API key"""
    settings = await get_orchestrator().settings_store.set_api_key(request.api_key)
    logger.info("api_key_updated", configured=bool(settings.api_key))
    return SettingsSummary.from_settings(settings)


@router.put("/lan", response_model=SettingsSummary)
async def set_lan_enabled(request: LanRequest):
    settings = await get_orchestrator().settings_store.set_lan_enabled(request.enabled)
    logger.info("lan_control_toggled", enabled=request.enabled)
    return SettingsSummary.from_settings(settings)


@router.put("/rooms", response_model=SettingsSummary)
async def set_room_names(request: RoomListRequest):
    """Replace the room list; assignments to removed rooms are dropped"""
    settings = await get_orchestrator().settings_store.set_room_names(request.rooms)
    return SettingsSummary.from_settings(settings)


@router.post("/rooms/rename", response_model=SettingsSummary)
async def rename_room(request: RoomRenameRequest):
    settings = await get_orchestrator().settings_store.rename_room(
        request.old_name, request.new_name
    )
    logger.info("room_renamed", old_name=request.old_name, new_name=request.new_name.strip())
    return SettingsSummary.from_settings(settings)


@router.delete("/rooms/{room_name}", response_model=SettingsSummary)
async def delete_room(room_name: str):
    settings = await get_orchestrator().settings_store.delete_room(room_name)
    logger.info("room_deleted", room_name=room_name)
    return SettingsSummary.from_settings(settings)
