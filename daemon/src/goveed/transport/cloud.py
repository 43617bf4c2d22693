"""
Cloud Client - Vendor cloud REST API

Handles communication with the vendor's developer API, including:
- Listing account devices and caching their SKU/model/capabilities
- Capability resolution and control requests
- Device state and device-native scene listings
- Retry with exponential backoff for transient failures

Two API generations are supported. The modern ("openapi") API addresses a
device by SKU + device id + capability; the legacy v1 API uses
device + model + a named command.
"""
import asyncio
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from goveed.models import (
    CAP_COLOR_SETTING,
    CAP_ON_OFF,
    CAP_ONLINE,
    CAP_RANGE,
    INSTANCE_BRIGHTNESS,
    INSTANCE_COLOR_RGB,
    INSTANCE_COLOR_TEMPERATURE,
    INSTANCE_POWER,
    RGB,
    Capability,
    CapabilityCommand,
    Device,
    DeviceSceneOption,
    DeviceSource,
    DeviceState,
    resolve_capability,
)
from goveed.transport.base import DeviceTransport, TransportError

logger = structlog.get_logger(__name__)

# API constants
DEFAULT_BASE_URL = "https://openapi.api.govee.com"
MODERN_API_HOST = "openapi.api.govee.com"
API_KEY_HEADER = "Govee-API-Key"
DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRY_COUNT = 3
BACKOFF_BASE_SECONDS = 0.3

RETRYABLE_STATUSES = {408, 429}


class CloudApiMode(str, Enum):
    MODERN = "modern"
    LEGACY = "legacy"


class CloudAPIError(TransportError):
    """Raised when the cloud API rejects a request or cannot be reached"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
    ):
        self.message = message
        self.status = status
        self.code = code
        super().__init__(message)

    @property
    def is_rate_limited(self) -> bool:
        if self.status == 429 or self.code == 429:
            return True
        lowered = self.message.lower()
        return "429" in lowered or "rate" in lowered

    @property
    def is_unsupported(self) -> bool:
        return "not support" in self.message.lower()

    @property
    def is_unknown_device(self) -> bool:
        return "devices not exist" in self.message.lower()


def should_retry(status: Optional[int]) -> bool:
    """Transient failures: no status (network), 5xx, 408, 429"""
    if status is None:
        return True
    if status >= 500:
        return True
    return status in RETRYABLE_STATUSES


def detect_api_mode(base_url: str) -> CloudApiMode:
    return CloudApiMode.MODERN if MODERN_API_HOST in base_url else CloudApiMode.LEGACY


# Response schemas


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ApiEnvelope(_Schema):
    code: Optional[int] = None
    message: Optional[str] = None
    msg: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        return self.message or self.msg


class CloudCapability(_Schema):
    type: str
    instance: str
    parameters: Optional[Any] = None


class CloudDeviceItem(_Schema):
    device: Optional[str] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    sku: Optional[str] = None
    model: Optional[str] = None
    device_name: Optional[str] = Field(default=None, alias="deviceName")
    name: Optional[str] = None
    capabilities: Optional[List[CloudCapability]] = None
    controllable: Optional[Union[bool, List[str]]] = None
    support_cmds: Optional[List[str]] = Field(default=None, alias="supportCmds")
    online: Optional[bool] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.device_id or self.device


class LegacyDeviceList(_Schema):
    devices: List[CloudDeviceItem] = Field(default_factory=list)


class DevicesResponse(ApiEnvelope):
    data: Optional[Union[List[CloudDeviceItem], LegacyDeviceList]] = None
    devices: Optional[List[CloudDeviceItem]] = None

    def items(self) -> List[CloudDeviceItem]:
        if isinstance(self.data, list):
            return self.data
        if isinstance(self.data, LegacyDeviceList):
            return self.data.devices
        return self.devices or []


class SceneOption(_Schema):
    name: Optional[str] = None
    value: Any = None


class SceneParameters(_Schema):
    options: List[SceneOption] = Field(default_factory=list)


class SceneCapability(_Schema):
    type: str
    instance: str
    parameters: Optional[SceneParameters] = None


class ScenePayload(_Schema):
    capabilities: List[SceneCapability] = Field(default_factory=list)


class SceneResponse(ApiEnvelope):
    payload: Optional[ScenePayload] = None


class CapabilityStateValue(_Schema):
    value: Any = None


class StateCapability(_Schema):
    type: str
    instance: str
    state: Optional[CapabilityStateValue] = None


class StatePayload(_Schema):
    capabilities: List[StateCapability] = Field(default_factory=list)


class StateResponse(ApiEnvelope):
    payload: Optional[StatePayload] = None


class LegacyStateData(_Schema):
    properties: List[Dict[str, Any]] = Field(default_factory=list)


class LegacyStateResponse(ApiEnvelope):
    data: Optional[LegacyStateData] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _decode(schema, payload: Dict[str, Any]):
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise CloudAPIError(f"Malformed response from cloud API: {e}") from e


class CloudClient(DeviceTransport):
    """
    Client for the vendor cloud API

    Caches model, SKU and capabilities per device id from the last device
    listing; modern-mode control requires a cached SKU.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        retry_count: int = DEFAULT_RETRY_COUNT,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize cloud client

        Args:
            api_key: Account API key sent with every request
            base_url: API base URL; selects the API mode
            retry_count: Retries after the first attempt for transient failures
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        super().__init__("Cloud")
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.mode = detect_api_mode(self.base_url)
        self.retry_count = retry_count
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self._models: Dict[str, str] = {}
        self._skus: Dict[str, str] = {}
        self._capabilities: Dict[str, List[Capability]] = {}

        # Statistics
        self.requests_made = 0
        self.retries = 0

    @property
    def headers(self) -> Dict[str, str]:
        return {
            API_KEY_HEADER: self.api_key,
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _backoff(self, attempt: int) -> None:
        self.retries += 1
        await asyncio.sleep(BACKOFF_BASE_SECONDS * (2 ** attempt))

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Make an API request with retry and backoff

        Network errors, HTTP 5xx/408/429 and any non-200 application code
        are retried retry_count times, sleeping 0.3 * 2**attempt seconds
        between attempts. Other HTTP errors are raised immediately.

        Raises:
            CloudAPIError: On permanent failure or when retries are exhausted
        """
        client = await self._get_client()

        for attempt in range(self.retry_count + 1):
            can_retry = attempt < self.retry_count
            self.requests_made += 1

            try:
                response = await client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                logger.warning(
                    "cloud_request_error", path=path, attempt=attempt, error=str(e)
                )
                if can_retry:
                    await self._backoff(attempt)
                    continue
                self.error_count += 1
                raise CloudAPIError(f"Request failed: {e}") from e

            body = self._json_body(response)
            envelope = ApiEnvelope.model_validate(body) if body else ApiEnvelope()

            if response.is_error:
                status = response.status_code
                message = (
                    body.get("message")
                    if isinstance(body.get("message"), str)
                    else f"Govee API error ({status})"
                )
                logger.warning(
                    "cloud_api_http_error",
                    path=path,
                    status_code=status,
                    attempt=attempt,
                    detail=message,
                )
                if should_retry(status) and can_retry:
                    await self._backoff(attempt)
                    continue
                self.error_count += 1
                raise CloudAPIError(message, status=status)

            if envelope.code is not None and envelope.code != 200:
                logger.warning(
                    "cloud_api_code_error",
                    path=path,
                    code=envelope.code,
                    attempt=attempt,
                    detail=envelope.text,
                )
                if can_retry:
                    await self._backoff(attempt)
                    continue
                self.error_count += 1
                raise CloudAPIError(envelope.text or "Govee API error", code=envelope.code)

            return body

        # Unreachable: the final attempt always returns or raises
        raise CloudAPIError("Unknown Govee API error")

    async def list_devices(self) -> List[Device]:
        """
        Fetch the account's devices and refresh the per-device cache

        Returns:
            Devices reported by the cloud
        """
        path = "/router/api/v1/user/devices" if self.mode == CloudApiMode.MODERN else "/v1/devices"
        parsed = _decode(DevicesResponse, await self._request("GET", path))

        devices = []
        for item in parsed.items():
            device_id = item.identifier
            if not device_id:
                continue

            capabilities = None
            if item.capabilities is not None:
                capabilities = [
                    Capability(type=cap.type, instance=cap.instance, parameters=cap.parameters)
                    for cap in item.capabilities
                ]
                self._capabilities[device_id] = capabilities
            if item.model:
                self._models[device_id] = item.model
            if item.sku:
                self._skus[device_id] = item.sku

            if isinstance(item.controllable, bool):
                supported: List[str] = []
            elif capabilities is not None:
                supported = [cap.type for cap in capabilities]
            else:
                supported = item.support_cmds or item.controllable or []

            devices.append(
                Device(
                    id=device_id,
                    name=item.device_name or item.name or item.sku or "Unnamed",
                    model=item.model or item.sku or "unknown",
                    sku=item.sku,
                    source=DeviceSource.CLOUD,
                    capabilities=[
                        Capability(type=cap.type, instance=cap.instance)
                        for cap in capabilities
                    ]
                    if capabilities is not None
                    else None,
                    supported_commands=supported,
                    online=item.online,
                )
            )

        logger.info("cloud_devices_fetched", count=len(devices), mode=self.mode.value)
        return devices

    def resolve(self, device_id: str, type_: str, instance: str) -> CapabilityCommand:
        """Resolve a capability against the cached capability list (value unset)"""
        ref = resolve_capability(self._capabilities.get(device_id), type_, instance)
        return CapabilityCommand(type=ref.type, instance=ref.instance)

    async def set_power(self, device_id: str, on: bool) -> None:
        command = self.resolve(device_id, CAP_ON_OFF, INSTANCE_POWER)
        command.value = 1 if on else 0
        await self.control_capability(device_id, command)

    async def set_brightness(self, device_id: str, level: float) -> None:
        command = self.resolve(device_id, CAP_RANGE, INSTANCE_BRIGHTNESS)
        command.value = max(0, min(100, level))
        await self.control_capability(device_id, command)

    async def set_color(self, device_id: str, color: RGB) -> None:
        command = self.resolve(device_id, CAP_COLOR_SETTING, INSTANCE_COLOR_RGB)
        command.value = color.to_int()
        await self.control_capability(device_id, command)

    async def set_color_temperature(self, device_id: str, kelvin: float) -> None:
        command = self.resolve(device_id, CAP_COLOR_SETTING, INSTANCE_COLOR_TEMPERATURE)
        command.value = int(round(kelvin))
        await self.control_capability(device_id, command)

    async def control_capability(self, device_id: str, command: CapabilityCommand) -> None:
        """
        Send a capability command as-is

        Also used to replay device-native scene payloads.

        Raises:
            CloudAPIError: If the SKU is unknown (modern mode) or the request fails
        """
        if self.mode == CloudApiMode.MODERN:
            sku = self._skus.get(device_id)
            if not sku:
                raise CloudAPIError("Device SKU missing. Refresh devices first.")

            logger.debug(
                "cloud_control",
                device_id=device_id,
                sku=sku,
                type=command.type,
                instance=command.instance,
            )
            await self._request(
                "POST",
                "/router/api/v1/device/control",
                json={
                    "requestId": str(uuid.uuid4()),
                    "payload": {
                        "sku": sku,
                        "device": device_id,
                        "capability": command.model_dump(),
                    },
                },
            )
            return

        name, value = self.to_legacy_command(command)
        logger.debug("cloud_legacy_control", device_id=device_id, cmd=name)
        await self._request(
            "PUT",
            "/v1/devices/control",
            json={
                "device": device_id,
                "model": self._models.get(device_id, ""),
                "cmd": {"name": name, "value": value},
            },
        )

    @staticmethod
    def to_legacy_command(command: CapabilityCommand) -> tuple:
        """Translate a capability command into a legacy (name, value) pair"""
        if command.type == CAP_ON_OFF:
            return "turn", "on" if command.value == 1 else "off"
        if command.type == CAP_RANGE:
            return "brightness", command.value
        if command.type == CAP_COLOR_SETTING:
            if command.instance == INSTANCE_COLOR_TEMPERATURE:
                return "colorTem", command.value
            if _is_number(command.value):
                return "color", RGB.from_int(int(command.value)).model_dump()
            return "color", command.value
        return command.type, command.value

    async def get_device_state(self, device_id: str, sku: str) -> DeviceState:
        """
        Fetch current device state

        Args:
            device_id: Vendor device id
            sku: Device SKU (model in legacy mode)
        """
        if self.mode == CloudApiMode.LEGACY:
            return await self._get_legacy_state(device_id, sku)

        body = await self._request(
            "POST",
            "/router/api/v1/device/state",
            json={"requestId": str(uuid.uuid4()), "payload": {"sku": sku, "device": device_id}},
        )
        parsed = _decode(StateResponse, body)

        state = DeviceState()
        for cap in parsed.payload.capabilities if parsed.payload else []:
            value = cap.state.value if cap.state else None
            if cap.type == CAP_ONLINE and isinstance(value, bool):
                state.online = value
            elif cap.type == CAP_ON_OFF and _is_number(value):
                state.power = value == 1
            elif cap.type == CAP_RANGE and cap.instance == INSTANCE_BRIGHTNESS and _is_number(value):
                state.brightness = int(value)
            elif cap.type == CAP_COLOR_SETTING and cap.instance == INSTANCE_COLOR_RGB and _is_number(value):
                state.color_rgb = RGB.from_int(int(value))
            elif (
                cap.type == CAP_COLOR_SETTING
                and cap.instance == INSTANCE_COLOR_TEMPERATURE
                and _is_number(value)
            ):
                state.color_temperature_k = int(value)
        return state

    async def _get_legacy_state(self, device_id: str, model: str) -> DeviceState:
        body = await self._request(
            "GET",
            "/v1/devices/state",
            params={"device": device_id, "model": self._models.get(device_id, model)},
        )
        parsed = _decode(LegacyStateResponse, body)

        state = DeviceState()
        for prop in parsed.data.properties if parsed.data else []:
            if "online" in prop:
                state.online = prop["online"] in (True, "true")
            if "powerState" in prop:
                state.power = prop["powerState"] == "on"
            if _is_number(prop.get("brightness")):
                state.brightness = int(prop["brightness"])
            if isinstance(prop.get("color"), dict):
                state.color_rgb = RGB.model_validate(prop["color"])
            if _is_number(prop.get("colorTem")):
                state.color_temperature_k = int(prop["colorTem"])
        return state

    async def get_dynamic_scenes(self, device_id: str, sku: str) -> List[DeviceSceneOption]:
        return await self._get_scene_options("/router/api/v1/device/scenes", device_id, sku)

    async def get_diy_scenes(self, device_id: str, sku: str) -> List[DeviceSceneOption]:
        return await self._get_scene_options("/router/api/v1/device/diy-scenes", device_id, sku)

    async def _get_scene_options(
        self, path: str, device_id: str, sku: str
    ) -> List[DeviceSceneOption]:
        if self.mode == CloudApiMode.LEGACY:
            raise CloudAPIError("Device scenes are not supported by the legacy API")

        body = await self._request(
            "POST",
            path,
            json={"requestId": str(uuid.uuid4()), "payload": {"sku": sku, "device": device_id}},
        )
        parsed = _decode(SceneResponse, body)

        options = []
        for capability in parsed.payload.capabilities if parsed.payload else []:
            for option in capability.parameters.options if capability.parameters else []:
                options.append(
                    DeviceSceneOption(
                        name=option.name or "Scene",
                        value=option.value,
                        type=capability.type,
                        instance=capability.instance,
                    )
                )
        return options

    def get_statistics(self) -> dict:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "base_url": self.base_url,
            "cached_devices": len(self._skus),
            "requests": self.requests_made,
            "retries": self.retries,
            "errors": self.error_count,
        }
