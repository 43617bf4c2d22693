"""
goveed Light Control API
"""
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from goveed.config import Settings

# Global reference to daemon (set by main.py)
_daemon_instance: Optional[object] = None


def set_daemon_instance(daemon):
    """Set the global daemon instance for API access"""
    global _daemon_instance
    _daemon_instance = daemon


def get_daemon_instance():
    """Get the global daemon instance"""
    return _daemon_instance


def create_app(settings: Settings) -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
# goveed Light Control API

Local HTTP control surface for smart lights reachable over the LAN and the
vendor cloud:

- **Devices** - Unified device list, power/brightness/color control, state
- **Scenes** - User scenes with targets, actions and schedules
- **System** - Diagnostics, API key, LAN toggle and rooms

Control requests go over the LAN first when a device has a local address
and fall back to the cloud when an API key is configured.
        """,
        docs_url="/docs" if settings.api_docs_enabled else None,
        redoc_url="/redoc" if settings.api_docs_enabled else None,
        openapi_tags=[
            {
                "name": "system",
                "description": "Health, status, diagnostics and user settings.",
            },
            {
                "name": "devices",
                "description": "List, refresh and control devices; read device state and device-native scenes.",
            },
            {
                "name": "scenes",
                "description": "Manage user scenes and apply them to their targets.",
            },
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get(
        "/health",
        summary="Health Check",
        description="Check if the daemon is running. Use this endpoint for monitoring and health probes.",
        tags=["system"],
    )
    async def health_check():
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "version": settings.api_version,
            "service": "goveed",
        }

    @app.get(
        "/status",
        summary="System Status",
        description="""
Get system status including:
- Orchestrator statistics (device count, provider status, transports)
- Scene engine statistics
- Armed schedule timers
        """,
        tags=["system"],
    )
    async def get_status():
        """Get daemon status including orchestrator and scheduler statistics"""
        daemon = get_daemon_instance()

        response = {
            "status": "running",
            "version": settings.api_version,
            "service": "goveed",
        }

        if daemon and daemon.orchestrator:
            response["orchestrator"] = daemon.orchestrator.get_statistics()

        if daemon and daemon.scene_engine:
            response["scenes"] = daemon.scene_engine.get_statistics()

        if daemon and daemon.scheduler:
            response["scheduler"] = daemon.scheduler.get_statistics()

        return response

    # Register API routers
    from goveed.api.routes import devices, scenes, system

    app.include_router(devices.router, prefix="/api/devices", tags=["devices"])
    app.include_router(scenes.router, prefix="/api/scenes", tags=["scenes"])
    app.include_router(system.router, prefix="/api/system", tags=["system"])

    return app
