"""
goveed Light Control Daemon - Main Entry Point
"""
import asyncio
import signal
import sys
from datetime import datetime
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI

from goveed.api import create_app, set_daemon_instance
from goveed.config import Settings, get_settings
from goveed.control.orchestrator import DeviceOrchestrator
from goveed.control.scheduler import SceneScheduler
from goveed.control.settings_store import SettingsStore
from goveed.logging_config import setup_logging
from goveed.logic.scenes import SceneEngine
from goveed.models import Device
from goveed.transport.lan import LanClient

logger = structlog.get_logger(__name__)


class GoveeDaemon:
    """Main daemon controller wiring transports, scenes and schedules"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.app: Optional[FastAPI] = None
        self.should_exit = False

        self.settings_store = SettingsStore(self.settings.settings_path)
        self.lan_client = LanClient(
            multicast_address=self.settings.lan_multicast_address,
            scan_port=self.settings.lan_scan_port,
            response_port=self.settings.lan_response_port,
            control_port=self.settings.lan_control_port,
            discovery_timeout=self.settings.lan_discovery_timeout_seconds,
            status_timeout=self.settings.lan_status_timeout_seconds,
        )
        self.orchestrator = DeviceOrchestrator(
            self.settings_store,
            lan_client=self.lan_client,
            cloud_base_url=self.settings.cloud_base_url,
            cloud_retry_count=self.settings.cloud_retry_count,
            cloud_timeout=self.settings.cloud_timeout_seconds,
            state_concurrency=self.settings.state_refresh_concurrency,
        )
        self.scene_engine = SceneEngine(
            self.orchestrator,
            self.settings_store,
            command_delay=self.settings.scene_command_delay_seconds,
            rate_limit_backoff=self.settings.scene_rate_limit_backoff_seconds,
        )
        self.scheduler = SceneScheduler(self.scene_engine, self.settings_store)
        self.scene_engine.set_change_callback(self.scheduler.schedule_all)

    async def _seed_settings(self) -> None:
        """Write first-run defaults and the configured API key into the store"""
        if not self.settings_store.path.exists():
            await self.settings_store.save(lan_enabled=self.settings.lan_enabled_default)

        stored = await self.settings_store.load()
        if not stored.api_key and self.settings.cloud_api_key:
            await self.settings_store.set_api_key(self.settings.cloud_api_key)
            logger.info("api_key_seeded_from_environment")

    async def refresh_devices(self) -> List[Device]:
        """Refresh the device list and record when it happened"""
        devices = await self.orchestrator.refresh_devices()
        await self.settings_store.save(last_refresh_at=datetime.now())
        return devices

    async def startup(self):
        """Initialize all daemon components"""
        logger.info("goveed_daemon_starting", version=self.settings.api_version)

        await self._seed_settings()

        self.app = create_app(self.settings)
        set_daemon_instance(self)

        devices = await self.refresh_devices()
        logger.info(
            "initial_refresh_complete",
            devices=len(devices),
            provider_status=self.orchestrator.get_diagnostics().provider_status.value,
        )

        armed = await self.scheduler.schedule_all()
        logger.info(
            "goveed_daemon_ready",
            host=self.settings.daemon_host,
            port=self.settings.daemon_port,
            schedules=armed,
        )

    async def shutdown(self):
        """Gracefully shutdown all components"""
        logger.info("goveed_daemon_shutting_down")

        await self.scheduler.stop()
        await self.orchestrator.close()

        logger.info("goveed_daemon_stopped")

    def handle_signal(self, signum, frame):
        """Handle shutdown signals"""
        logger.info("signal_received", signal=signal.Signals(signum).name)
        self.should_exit = True


async def main_async():
    """Async main function"""
    daemon = GoveeDaemon()

    signal.signal(signal.SIGINT, daemon.handle_signal)
    signal.signal(signal.SIGTERM, daemon.handle_signal)

    try:
        await daemon.startup()

        config = uvicorn.Config(
            daemon.app,
            host=daemon.settings.daemon_host,
            port=daemon.settings.daemon_port,
            log_level=daemon.settings.log_level.lower(),
            access_log=True,
        )
        server = uvicorn.Server(config)
        await server.serve()

    except Exception as e:
        logger.error("daemon_error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        await daemon.shutdown()


def main():
    """Entry point for the daemon"""
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        json_logs=(settings.log_level != "DEBUG"),
        log_file=settings.log_file,
    )

    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("interrupted_by_user")
        sys.exit(0)


if __name__ == "__main__":
    main()
