"""
Shared test fixtures for goveed daemon tests.

Provides fixtures for:
- Settings store backed by a temporary file
- Mock LAN and cloud transports
- Orchestrator, scene engine and scheduler instances
- API client (httpx AsyncClient over ASGI)
- Sample devices and scenes
"""
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Ensure src/ is on sys.path for direct pytest runs
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from goveed.api import create_app, set_daemon_instance
from goveed.config import Settings
from goveed.control.orchestrator import DeviceOrchestrator
from goveed.control.scheduler import SceneScheduler
from goveed.control.settings_store import SettingsStore
from goveed.logic.scenes import SceneEngine
from goveed.models import (
    CAP_COLOR_SETTING,
    CAP_ON_OFF,
    CAP_RANGE,
    INSTANCE_BRIGHTNESS,
    INSTANCE_COLOR_RGB,
    INSTANCE_COLOR_TEMPERATURE,
    INSTANCE_POWER,
    Capability,
    Device,
    DeviceSource,
)
from goveed.transport.cloud import CloudClient
from goveed.transport.lan import LanClient


# ============================================================================
# Sample Data
# ============================================================================

FULL_CAPABILITIES = [
    Capability(type=CAP_ON_OFF, instance=INSTANCE_POWER),
    Capability(type=CAP_RANGE, instance=INSTANCE_BRIGHTNESS),
    Capability(type=CAP_COLOR_SETTING, instance=INSTANCE_COLOR_RGB),
    Capability(type=CAP_COLOR_SETTING, instance=INSTANCE_COLOR_TEMPERATURE),
]


def make_device(
    device_id: str = "AA:BB:CC:DD:EE:FF:00:11",
    name: str = "Desk Lamp",
    sku: str = "H6008",
    source: DeviceSource = DeviceSource.CLOUD,
    lan_ip: str = None,
    capabilities=FULL_CAPABILITIES,
) -> Device:
    """Build a device record for tests."""
    return Device(
        id=device_id,
        name=name,
        model=sku,
        sku=sku,
        source=source,
        lan_ip=lan_ip,
        lan_port=4003 if lan_ip else None,
        capabilities=list(capabilities) if capabilities is not None else None,
    )


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings_path(tmp_path) -> Path:
    """Path of a settings file inside a temporary directory."""
    return tmp_path / "config" / "settings.json"


@pytest.fixture
def settings_store(settings_path) -> SettingsStore:
    """Create a SettingsStore over a temporary file."""
    return SettingsStore(str(settings_path))


@pytest.fixture
def test_settings(settings_path) -> Settings:
    """Create test settings."""
    return Settings(
        settings_path=str(settings_path),
        log_level="DEBUG",
        api_docs_enabled=True,
    )


# ============================================================================
# Transport Fixtures
# ============================================================================

@pytest.fixture
def mock_lan() -> MagicMock:
    """Mock LAN client; async methods are AsyncMocks."""
    lan = MagicMock(spec=LanClient)
    lan.discover.return_value = []
    lan.get_statistics.return_value = {"name": "LAN"}
    return lan


@pytest.fixture
def mock_cloud() -> MagicMock:
    """Mock cloud client; async methods are AsyncMocks."""
    cloud = MagicMock(spec=CloudClient)
    cloud.list_devices.return_value = []
    cloud.get_statistics.return_value = {"name": "Cloud"}
    return cloud


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def orchestrator(settings_store, mock_lan, mock_cloud) -> DeviceOrchestrator:
    """Orchestrator wired to the mock transports."""
    return DeviceOrchestrator(
        settings_store,
        lan_client=mock_lan,
        cloud_factory=lambda api_key: mock_cloud,
    )


@pytest.fixture
def scene_engine(orchestrator, settings_store) -> SceneEngine:
    """Scene engine with no inter-command delay."""
    return SceneEngine(orchestrator, settings_store, command_delay=0, rate_limit_backoff=0)


@pytest_asyncio.fixture
async def scene_scheduler(scene_engine, settings_store) -> AsyncGenerator[SceneScheduler, None]:
    """Scene scheduler that is stopped after the test."""
    scheduler = SceneScheduler(scene_engine, settings_store)
    yield scheduler
    await scheduler.stop()


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def mock_daemon() -> SimpleNamespace:
    """Daemon stand-in whose components are mocks."""
    orchestrator = MagicMock(spec=DeviceOrchestrator)
    orchestrator.settings_store = MagicMock(spec=SettingsStore)
    orchestrator.devices = []
    orchestrator.find_device.return_value = None
    orchestrator.get_statistics.return_value = {"devices": 0}

    scene_engine = MagicMock(spec=SceneEngine)
    scene_engine.get_statistics.return_value = {"scenes_applied": 0}

    scheduler = MagicMock(spec=SceneScheduler)
    scheduler.get_statistics.return_value = {"armed": 0}

    return SimpleNamespace(
        orchestrator=orchestrator,
        scene_engine=scene_engine,
        scheduler=scheduler,
        refresh_devices=AsyncMock(return_value=[]),
    )


@pytest_asyncio.fixture
async def test_app(test_settings, mock_daemon):
    """Create a FastAPI application bound to the mock daemon."""
    app = create_app(test_settings)
    set_daemon_instance(mock_daemon)

    yield app

    set_daemon_instance(None)


@pytest_asyncio.fixture
async def async_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for API testing."""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test"
    ) as client:
        yield client
