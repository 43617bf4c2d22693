"""
Device Orchestrator - Unified device list and control routing

Merges cloud and LAN device identities into one list, routes control
through the LAN first with a cloud fallback, and keeps the diagnostics
snapshot describing which provider is currently serving requests.
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import structlog

from goveed.control.settings_store import SettingsStore
from goveed.models import (
    CAP_COLOR_SETTING,
    CAP_ON_OFF,
    CAP_RANGE,
    INSTANCE_BRIGHTNESS,
    INSTANCE_COLOR_RGB,
    INSTANCE_COLOR_TEMPERATURE,
    INSTANCE_POWER,
    RGB,
    CapabilityCommand,
    CapabilityRef,
    Device,
    DeviceSceneOption,
    DeviceScenesCacheEntry,
    DeviceSource,
    DeviceState,
    Diagnostics,
    ProviderStatus,
    StoredSettings,
    normalize_device_id,
    resolve_capability,
)
from goveed.transport.base import TransportError
from goveed.transport.cloud import CloudAPIError, CloudClient
from goveed.transport.lan import LanClient, LanTransportError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CloudFactory = Callable[[str], CloudClient]


class MissingApiKeyError(TransportError):
    """A cloud operation was requested but no API key is configured"""

    def __init__(self, message: str = "Missing API key"):
        super().__init__(message)


class MissingSkuError(TransportError):
    """The cloud cannot address a device without its SKU"""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device SKU missing for {device_id}")


class DeviceNotFoundError(TransportError):
    """The device is not in the current device list"""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} not found")


def merge_devices(cloud_devices: Iterable[Device], lan_devices: Iterable[Device]) -> List[Device]:
    """
    Merge cloud and LAN device lists by normalized id

    Cloud devices keep their order and pick up the LAN address of a matching
    local device (source "hybrid"); local devices with no cloud counterpart
    are appended (source "local").
    """
    lan_by_id = {device.normalized_id: device for device in lan_devices}

    merged = []
    seen = set()
    for device in cloud_devices:
        key = device.normalized_id
        if key in seen:
            continue
        seen.add(key)

        local = lan_by_id.get(key)
        if local is None:
            merged.append(device.model_copy(update={"source": DeviceSource.CLOUD}))
        else:
            merged.append(
                device.model_copy(
                    update={
                        "lan_ip": local.lan_ip,
                        "lan_port": local.lan_port,
                        "source": DeviceSource.HYBRID,
                    }
                )
            )

    for key, local in lan_by_id.items():
        if key not in seen:
            seen.add(key)
            merged.append(local.model_copy(update={"source": DeviceSource.LOCAL}))

    return merged


class DeviceOrchestrator:
    """
    Single entry point for device listing, control and state

    The cloud client is an owned field, rebuilt only when the API key or
    base URL changes.
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        lan_client: Optional[LanClient] = None,
        cloud_base_url: Optional[str] = None,
        cloud_retry_count: int = 3,
        cloud_timeout: float = 10.0,
        state_concurrency: int = 3,
        cloud_factory: Optional[CloudFactory] = None,
    ):
        """
        Initialize orchestrator

        Args:
            settings_store: Source of the API key, LAN toggle and caches
            lan_client: LAN transport (None disables local control)
            cloud_base_url: Cloud API base URL
            cloud_retry_count: Retries for transient cloud failures
            cloud_timeout: Cloud request timeout in seconds
            state_concurrency: Max concurrent state fetches
            cloud_factory: Builds a cloud client for an API key
        """
        self.settings_store = settings_store
        self.lan_client = lan_client
        self.cloud_base_url = cloud_base_url
        self.cloud_retry_count = cloud_retry_count
        self.cloud_timeout = cloud_timeout
        self.state_concurrency = state_concurrency
        self._cloud_factory = cloud_factory or self._default_cloud_factory

        self.devices: List[Device] = []
        self.power_state: Dict[str, bool] = {}
        self.diagnostics = Diagnostics()
        self.last_state_update_at: Optional[datetime] = None

        self._cloud: Optional[CloudClient] = None
        self._cloud_key: Optional[str] = None
        self._cloud_base_url: Optional[str] = None
        self._cloud_lock = asyncio.Lock()

    def _default_cloud_factory(self, api_key: str) -> CloudClient:
        return CloudClient(
            api_key=api_key,
            base_url=self.cloud_base_url,
            retry_count=self.cloud_retry_count,
            timeout=self.cloud_timeout,
        )

    async def get_cloud_client(self, api_key: str) -> CloudClient:
        """Return the cached cloud client, rebuilding it if its inputs changed"""
        async with self._cloud_lock:
            if (
                self._cloud is None
                or self._cloud_key != api_key
                or self._cloud_base_url != self.cloud_base_url
            ):
                previous = self._cloud
                self._cloud = self._cloud_factory(api_key)
                self._cloud_key = api_key
                self._cloud_base_url = self.cloud_base_url
                if previous is not None:
                    await previous.close()
                logger.info("cloud_client_created", base_url=self.cloud_base_url)
            return self._cloud

    async def close(self) -> None:
        async with self._cloud_lock:
            if self._cloud is not None:
                await self._cloud.close()
                self._cloud = None

    # Device list

    @property
    def device_count(self) -> int:
        return len(self.devices)

    def find_device(self, device_id: str) -> Optional[Device]:
        """Look up a device by exact id, then by normalized id"""
        for device in self.devices:
            if device.id == device_id:
                return device
        key = normalize_device_id(device_id)
        for device in self.devices:
            if device.normalized_id == key:
                return device
        return None

    async def list_devices(self) -> List[Device]:
        if not self.devices:
            return await self.refresh_devices()
        return list(self.devices)

    async def refresh_devices(self) -> List[Device]:
        """
        Rebuild the device list from LAN discovery and the cloud

        Never raises. LAN discovery failure counts as "no local devices";
        cloud failure falls back to the local-only list and is recorded in
        diagnostics.

        Returns:
            The merged device list
        """
        settings = await self.settings_store.load()

        lan_devices: List[Device] = []
        if settings.lan_enabled and self.lan_client is not None:
            try:
                lan_devices = await self.lan_client.discover()
            except Exception as e:
                logger.warning("lan_discovery_failed", error=str(e))

        if not settings.api_key:
            self.devices = lan_devices
            self.diagnostics = Diagnostics(
                provider_status=ProviderStatus.LOCAL if lan_devices else ProviderStatus.MISSING_KEY
            )
            self._seed_power_state()
            logger.info("devices_refreshed", count=len(self.devices), cloud=False)
            return list(self.devices)

        try:
            cloud = await self.get_cloud_client(settings.api_key)
            cloud_devices = await cloud.list_devices()
        except Exception as e:
            logger.error("cloud_device_refresh_failed", error=str(e), exc_info=True)
            self.devices = lan_devices
            self.diagnostics = Diagnostics(
                provider_status=ProviderStatus.LOCAL if lan_devices else ProviderStatus.ERROR,
                last_error=str(e),
                last_error_at=datetime.now(),
            )
            self._seed_power_state()
            return list(self.devices)

        self.devices = merge_devices(cloud_devices, lan_devices)
        self.diagnostics = Diagnostics(
            provider_status=ProviderStatus.HYBRID if lan_devices else ProviderStatus.CLOUD
        )
        self._seed_power_state()

        logger.info(
            "devices_refreshed",
            count=len(self.devices),
            cloud=len(cloud_devices),
            local=len(lan_devices),
        )
        return list(self.devices)

    def _seed_power_state(self) -> None:
        for device in self.devices:
            self.power_state.setdefault(device.id, True)

    # Provider helpers

    async def run_with_provider(
        self,
        work: Callable[[CloudClient], Awaitable[T]],
        propagate_error: bool = False,
        settings: Optional[StoredSettings] = None,
    ) -> Optional[T]:
        """
        Run a cloud operation and record the outcome in diagnostics

        Args:
            work: Coroutine function receiving the cloud client
            propagate_error: Raise failures instead of returning None
            settings: Already-loaded settings (loaded if omitted)

        Returns:
            The result of work, or None when a failure was swallowed

        Raises:
            MissingApiKeyError: No API key and propagate_error is set
            TransportError: work failed and propagate_error is set
        """
        if settings is None:
            settings = await self.settings_store.load()

        if not settings.api_key:
            self.diagnostics = Diagnostics(provider_status=ProviderStatus.MISSING_KEY)
            if propagate_error:
                raise MissingApiKeyError()
            return None

        try:
            cloud = await self.get_cloud_client(settings.api_key)
            result = await work(cloud)
        except TransportError as e:
            logger.warning("cloud_operation_failed", error=str(e))
            self.diagnostics = Diagnostics(
                provider_status=ProviderStatus.ERROR,
                last_error=str(e),
                last_error_at=datetime.now(),
            )
            if propagate_error:
                raise
            return None

        self.diagnostics = Diagnostics(provider_status=ProviderStatus.CLOUD)
        return result

    def resolve_capability(self, device_id: str, type_: str, instance: str) -> CapabilityRef:
        device = self.find_device(device_id)
        return resolve_capability(device.capabilities if device else None, type_, instance)

    def _cloud_id(self, device_id: str) -> str:
        device = self.find_device(device_id)
        return device.id if device else device_id

    async def _try_local(
        self,
        settings: StoredSettings,
        device_id: str,
        operation: str,
        call: Callable[[LanClient, str], Awaitable[T]],
    ) -> bool:
        """
        Attempt an operation over the LAN

        Returns:
            True if the LAN call succeeded, False if the LAN path is not
            available or failed with a cloud fallback available

        Raises:
            LanTransportError: The LAN call failed and there is no API key
        """
        device = self.find_device(device_id)
        if not (settings.lan_enabled and self.lan_client and device and device.lan_ip):
            return False

        try:
            await call(self.lan_client, device.id)
            return True
        except LanTransportError as e:
            if not settings.api_key:
                raise
            logger.info(
                "lan_control_failed_using_cloud",
                device_id=device.id,
                operation=operation,
                error=str(e),
            )
            return False

    async def _control_cloud(
        self,
        settings: StoredSettings,
        device_id: str,
        type_: str,
        instance: str,
        value,
        propagate_error: bool,
    ) -> bool:
        ref = self.resolve_capability(device_id, type_, instance)
        command = CapabilityCommand(type=ref.type, instance=ref.instance, value=value)
        cloud_id = self._cloud_id(device_id)

        logger.debug(
            "cloud_control_requested",
            device_id=cloud_id,
            type=command.type,
            instance=command.instance,
        )

        async def work(cloud: CloudClient) -> bool:
            await cloud.control_capability(cloud_id, command)
            return True

        result = await self.run_with_provider(work, propagate_error=propagate_error, settings=settings)
        return bool(result)

    # Control

    async def set_power(self, device_id: str, on: bool, propagate_error: bool = False) -> bool:
        """
        Switch a device on or off, LAN first

        Returns:
            True if a transport accepted the command
        """
        settings = await self.settings_store.load()
        key = self._cloud_id(device_id)

        if await self._try_local(settings, device_id, "power", lambda lan, did: lan.set_power(did, on)):
            self.power_state[key] = on
            return True

        ok = await self._control_cloud(
            settings, device_id, CAP_ON_OFF, INSTANCE_POWER, 1 if on else 0, propagate_error
        )
        if ok:
            self.power_state[key] = on
        return ok

    async def set_brightness(
        self, device_id: str, level: float, propagate_error: bool = False
    ) -> bool:
        value = max(0, min(100, level))
        settings = await self.settings_store.load()

        if await self._try_local(
            settings, device_id, "brightness", lambda lan, did: lan.set_brightness(did, value)
        ):
            return True

        return await self._control_cloud(
            settings, device_id, CAP_RANGE, INSTANCE_BRIGHTNESS, value, propagate_error
        )

    async def set_color(self, device_id: str, color: RGB, propagate_error: bool = False) -> bool:
        settings = await self.settings_store.load()

        if await self._try_local(settings, device_id, "color", lambda lan, did: lan.set_color(did, color)):
            return True

        return await self._control_cloud(
            settings, device_id, CAP_COLOR_SETTING, INSTANCE_COLOR_RGB, color.to_int(), propagate_error
        )

    async def set_color_temperature(
        self, device_id: str, kelvin: float, propagate_error: bool = False
    ) -> bool:
        settings = await self.settings_store.load()

        if await self._try_local(
            settings,
            device_id,
            "color_temperature",
            lambda lan, did: lan.set_color_temperature(did, kelvin),
        ):
            return True

        return await self._control_cloud(
            settings,
            device_id,
            CAP_COLOR_SETTING,
            INSTANCE_COLOR_TEMPERATURE,
            int(round(kelvin)),
            propagate_error,
        )

    async def control_capability(
        self, device_id: str, command: CapabilityCommand, propagate_error: bool = False
    ) -> bool:
        """
        Apply an arbitrary capability command

        The four well-known capabilities go through the LAN-first paths;
        anything else (including device-native scene payloads) is resolved
        and sent to the cloud.
        """
        value = command.value
        numeric = isinstance(value, (int, float)) and not isinstance(value, bool)

        if command.is_pair(CAP_ON_OFF, INSTANCE_POWER):
            return await self.set_power(device_id, bool(value), propagate_error=propagate_error)
        if command.is_pair(CAP_RANGE, INSTANCE_BRIGHTNESS) and numeric:
            return await self.set_brightness(device_id, value, propagate_error=propagate_error)
        if command.is_pair(CAP_COLOR_SETTING, INSTANCE_COLOR_RGB) and numeric:
            return await self.set_color(
                device_id, RGB.from_int(int(value)), propagate_error=propagate_error
            )
        if command.is_pair(CAP_COLOR_SETTING, INSTANCE_COLOR_TEMPERATURE) and numeric:
            return await self.set_color_temperature(
                device_id, value, propagate_error=propagate_error
            )

        settings = await self.settings_store.load()
        return await self._control_cloud(
            settings, device_id, command.type, command.instance, value, propagate_error
        )

    # State

    async def get_device_state(self, device_id: str) -> DeviceState:
        """
        Fetch current device state, LAN first

        Raises:
            DeviceNotFoundError: Unknown device
            MissingSkuError: Cloud path needed but the device has no SKU
            TransportError: Both paths failed
        """
        device = self.find_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)

        settings = await self.settings_store.load()

        if settings.lan_enabled and self.lan_client and device.lan_ip:
            try:
                state = await self.lan_client.get_status(device.id)
                self.last_state_update_at = datetime.now()
                return state
            except LanTransportError as e:
                if not settings.api_key:
                    raise
                logger.info("lan_status_failed_using_cloud", device_id=device.id, error=str(e))

        if not device.sku:
            raise MissingSkuError(device.id)

        try:
            state = await self.run_with_provider(
                lambda cloud: cloud.get_device_state(device.id, device.sku),
                propagate_error=True,
                settings=settings,
            )
        except CloudAPIError as e:
            if not e.is_unknown_device:
                raise
            state = DeviceState()

        self.last_state_update_at = datetime.now()
        return state

    async def get_device_states(self, device_ids: Iterable[str]) -> Dict[str, DeviceState]:
        """
        Fetch state for several devices with bounded concurrency

        Per-device failures are logged and left out of the result.
        """
        semaphore = asyncio.Semaphore(self.state_concurrency)
        states: Dict[str, DeviceState] = {}

        async def fetch(device_id: str) -> None:
            async with semaphore:
                try:
                    states[device_id] = await self.get_device_state(device_id)
                except TransportError as e:
                    logger.warning("device_state_failed", device_id=device_id, error=str(e))

        await asyncio.gather(*(fetch(device_id) for device_id in device_ids))
        return states

    # Device-native scenes

    def _require_sku(self, device_id: str, sku: Optional[str]) -> str:
        if sku:
            return sku
        device = self.find_device(device_id)
        if device is None or not device.sku:
            raise MissingSkuError(device_id)
        return device.sku

    async def _get_scene_options(
        self, device_id: str, sku: Optional[str], diy: bool
    ) -> List[DeviceSceneOption]:
        sku = self._require_sku(device_id, sku)
        cloud_id = self._cloud_id(device_id)

        async def work(cloud: CloudClient) -> List[DeviceSceneOption]:
            if diy:
                return await cloud.get_diy_scenes(cloud_id, sku)
            return await cloud.get_dynamic_scenes(cloud_id, sku)

        try:
            return await self.run_with_provider(work, propagate_error=True)
        except CloudAPIError as e:
            if e.is_unsupported:
                return []
            raise

    async def get_dynamic_scenes(
        self, device_id: str, sku: Optional[str] = None
    ) -> List[DeviceSceneOption]:
        return await self._get_scene_options(device_id, sku, diy=False)

    async def get_diy_scenes(
        self, device_id: str, sku: Optional[str] = None
    ) -> List[DeviceSceneOption]:
        return await self._get_scene_options(device_id, sku, diy=True)

    async def fetch_device_scenes(self, device_id: str) -> DeviceScenesCacheEntry:
        """
        Fetch dynamic and DIY scenes for a device and cache them

        Errors propagate to the caller.
        """
        dynamic = await self.get_dynamic_scenes(device_id)
        diy = await self.get_diy_scenes(device_id)
        entry = DeviceScenesCacheEntry(dynamic=dynamic, diy=diy, fetched_at=datetime.now())
        key = self._cloud_id(device_id)

        def mutate(settings: StoredSettings):
            cache = dict(settings.device_scenes_cache)
            cache[key] = entry
            return {"device_scenes_cache": cache}

        await self.settings_store.update(mutate)
        logger.info(
            "device_scenes_fetched", device_id=key, dynamic=len(dynamic), diy=len(diy)
        )
        return entry

    async def get_cached_device_scenes(self, device_id: str) -> Optional[DeviceScenesCacheEntry]:
        settings = await self.settings_store.load()
        return settings.device_scenes_cache.get(self._cloud_id(device_id))

    # Diagnostics

    async def test_connection(self) -> int:
        """
        List cloud devices to verify the API key

        Returns:
            Number of devices the cloud reports
        """
        devices = await self.run_with_provider(
            lambda cloud: cloud.list_devices(), propagate_error=True
        )
        return len(devices)

    def get_diagnostics(self) -> Diagnostics:
        return self.diagnostics

    def get_power_snapshot(self) -> Dict[str, bool]:
        """Tracked power state per known device (unknown defaults to on)"""
        return {device.id: self.power_state.get(device.id, True) for device in self.devices}

    def get_statistics(self) -> dict:
        return {
            "devices": self.device_count,
            "provider_status": self.diagnostics.provider_status.value,
            "last_error": self.diagnostics.last_error,
            "last_state_update_at": (
                self.last_state_update_at.isoformat() if self.last_state_update_at else None
            ),
            "lan": self.lan_client.get_statistics() if self.lan_client else None,
            "cloud": self._cloud.get_statistics() if self._cloud else None,
        }
