"""
LAN Client - Local network discovery and control over UDP

Devices answer a multicast "scan" on the response port and accept unicast
JSON commands on their control port:

    {"msg": {"cmd": "<command>", "data": {...}}}

Control commands are fire-and-forget. Only "devStatus" expects a reply.
Devices must be discovered before they can be controlled.
"""
import asyncio
import json
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from goveed.models import RGB, Device, DeviceSource, DeviceState, normalize_device_id
from goveed.transport.base import DeviceTransport, TransportError

logger = structlog.get_logger(__name__)

# Protocol constants
MULTICAST_ADDRESS = "239.255.255.250"
SCAN_PORT = 4001
RESPONSE_PORT = 4002
CONTROL_PORT = 4003
DISCOVERY_TIMEOUT = 1.5
STATUS_TIMEOUT = 1.2

BRIGHTNESS_MIN = 1
BRIGHTNESS_MAX = 100
KELVIN_MIN = 2000
KELVIN_MAX = 9000


class LanTransportError(TransportError):
    """Raised when a LAN socket operation fails"""

    pass


class LanDeviceNotFoundError(LanTransportError):
    """Raised when a device is not in the discovery table"""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"LAN device not found: {device_id}")


class LanTimeoutError(LanTransportError):
    """Raised when a device does not answer a status request in time"""

    pass


class LanParseError(LanTransportError):
    """Raised when a datagram is not a valid protocol message"""

    pass


@dataclass
class LanMessage:
    """A decoded protocol datagram"""

    cmd: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    envelope: Dict[str, Any] = field(default_factory=dict)

    def first(self, *keys: str) -> Any:
        """Return the first non-null value for keys, looking in data then the envelope"""
        for source in (self.data, self.envelope):
            for key in keys:
                value = source.get(key)
                if value is not None:
                    return value
        return None


class LanStatusReply(BaseModel):
    """Payload of a devStatus reply"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    on_off: Optional[int] = Field(default=None, alias="onOff")
    brightness: Optional[int] = None
    color: Optional[RGB] = None
    color_tem_in_kelvin: Optional[int] = Field(default=None, alias="colorTemInKelvin")

    def to_device_state(self) -> DeviceState:
        return DeviceState(
            online=True,
            power=self.on_off == 1,
            brightness=self.brightness,
            color_rgb=self.color,
            color_temperature_k=self.color_tem_in_kelvin,
        )


def encode_message(cmd: str, data: Optional[Dict[str, Any]] = None) -> bytes:
    """Encode a command envelope as compact JSON bytes"""
    envelope = {"msg": {"cmd": cmd, "data": data if data is not None else {}}}
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def decode_message(raw: bytes) -> LanMessage:
    """
    Decode a datagram into a LanMessage

    Accepts data nested under msg.data, at the top level, or (failing both)
    treats the whole object as data. String data is decoded as JSON.

    Raises:
        LanParseError: If the datagram is not a JSON object
    """
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise LanParseError(f"Malformed LAN message: {e}") from e

    if not isinstance(parsed, dict):
        raise LanParseError("LAN message is not a JSON object")

    msg = parsed.get("msg") if isinstance(parsed.get("msg"), dict) else {}
    cmd = msg.get("cmd", parsed.get("cmd"))

    if msg.get("data") is not None:
        data = msg["data"]
    elif parsed.get("data") is not None:
        data = parsed["data"]
    else:
        data = parsed

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            data = {}
    if not isinstance(data, dict):
        data = {}

    return LanMessage(cmd=cmd if isinstance(cmd, str) else None, data=data, envelope=parsed)


def parse_scan_reply(
    raw: bytes,
    sender_ip: str,
    scan_payload: bytes,
    control_port: int = CONTROL_PORT,
) -> Optional[Device]:
    """
    Turn a scan reply into a Device

    Returns None for echoes of our own scan packet and for replies that
    carry no device id.

    Raises:
        LanParseError: If the datagram cannot be decoded
    """
    message = decode_message(raw)

    if message.cmd == "scan" and raw == scan_payload:
        return None

    device_id = message.first("device", "deviceId", "id")
    if not isinstance(device_id, str) or not device_id:
        return None

    port = message.data.get("port")
    sku = message.first("sku")

    return Device(
        id=device_id,
        name=message.first("deviceName", "name", "sku") or "Govee",
        model=message.first("model", "sku") or "unknown",
        sku=sku if isinstance(sku, str) else None,
        lan_ip=message.first("ip") or sender_ip,
        lan_port=port if isinstance(port, int) and not isinstance(port, bool) else control_port,
        source=DeviceSource.LOCAL,
        supported_commands=["power"],
    )


def _clamp(value: float, low: int, high: int) -> int:
    return max(low, min(high, int(round(value))))


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """Collects scan replies on the response port"""

    def __init__(self, on_datagram):
        self.on_datagram = on_datagram

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("lan_discovery_socket_error", error=str(exc))


class _StatusProtocol(asyncio.DatagramProtocol):
    """Resolves a future with the first datagram received"""

    def __init__(self):
        self.reply: asyncio.Future = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if not self.reply.done():
            self.reply.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self.reply.done():
            self.reply.set_exception(exc)


class LanClient(DeviceTransport):
    """
    Local network transport

    Keeps a discovery table of normalized device id -> (address, port)
    that is rebuilt on every discover() call.
    """

    def __init__(
        self,
        multicast_address: str = MULTICAST_ADDRESS,
        scan_port: int = SCAN_PORT,
        response_port: int = RESPONSE_PORT,
        control_port: int = CONTROL_PORT,
        discovery_timeout: float = DISCOVERY_TIMEOUT,
        status_timeout: float = STATUS_TIMEOUT,
    ):
        """
        Initialize LAN client

        Args:
            multicast_address: Group the scan datagram is sent to
            scan_port: Port devices listen on for scans
            response_port: Port we listen on for scan replies
            control_port: Default device control port
            discovery_timeout: Seconds to collect scan replies
            status_timeout: Seconds to wait for a devStatus reply
        """
        super().__init__("LAN")
        self.multicast_address = multicast_address
        self.scan_port = scan_port
        self.response_port = response_port
        self.control_port = control_port
        self.discovery_timeout = discovery_timeout
        self.status_timeout = status_timeout

        self._targets: Dict[str, Tuple[str, int]] = {}

        # Statistics
        self.scans = 0
        self.commands_sent = 0

        logger.info(
            "lan_client_initialized",
            multicast_address=multicast_address,
            scan_port=scan_port,
            response_port=response_port,
        )

    @property
    def known_device_ids(self) -> List[str]:
        return list(self._targets.keys())

    def add_target(self, device_id: str, ip: str, port: Optional[int] = None) -> None:
        """Record where a device can be reached"""
        self._targets[normalize_device_id(device_id)] = (ip, port or self.control_port)

    def _lookup(self, device_id: str) -> Tuple[str, int]:
        target = self._targets.get(normalize_device_id(device_id))
        if target is None:
            raise LanDeviceNotFoundError(device_id)
        return target

    def _create_listener_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.bind(("", self.response_port))
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise LanTransportError(
                f"Could not bind LAN listener on port {self.response_port}: {e}"
            ) from e

        # Multicast membership is best effort; the scan still goes out without it
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
            membership = socket.inet_aton(self.multicast_address) + socket.inet_aton("0.0.0.0")
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        except OSError as e:
            logger.debug("lan_multicast_join_failed", error=str(e))

        return sock

    async def discover(self) -> List[Device]:
        """
        Scan the local network for devices

        Sends one scan datagram and collects replies for the discovery
        window. Both sockets are closed on every exit path.

        Returns:
            Distinct devices that replied

        Raises:
            LanTransportError: If the listener socket cannot be set up
        """
        loop = asyncio.get_running_loop()
        payload = encode_message("scan", {"account_topic": "reserve"})
        found: Dict[str, Device] = {}

        def on_datagram(data: bytes, addr: Tuple[str, int]) -> None:
            try:
                device = parse_scan_reply(data, addr[0], payload, self.control_port)
            except LanParseError as e:
                logger.debug("lan_reply_ignored", address=addr[0], error=str(e))
                return
            if device is None:
                return
            found[device.normalized_id] = device
            logger.debug("lan_device_replied", device_id=device.id, address=device.lan_ip)

        self.scans += 1
        sock = self._create_listener_socket()
        listener = None
        sender = None

        try:
            listener, _ = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(on_datagram), sock=sock
            )
            sender, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol,
                family=socket.AF_INET,
                allow_broadcast=True,
            )
            try:
                sender.sendto(payload, (self.multicast_address, self.scan_port))
            except OSError as e:
                self.error_count += 1
                logger.warning("lan_scan_send_failed", error=str(e))
            else:
                await asyncio.sleep(self.discovery_timeout)
        except OSError as e:
            self.error_count += 1
            raise LanTransportError(f"LAN discovery failed: {e}") from e
        finally:
            if listener is not None:
                listener.close()
            else:
                sock.close()
            if sender is not None:
                sender.close()

        self._targets = {
            key: (device.lan_ip, device.lan_port) for key, device in found.items()
        }

        logger.info("lan_discovery_complete", device_count=len(found))
        return list(found.values())

    async def list_devices(self) -> List[Device]:
        return await self.discover()

    async def _send(self, device_id: str, cmd: str, data: Dict[str, Any]) -> None:
        """Send one fire-and-forget command datagram"""
        host, port = self._lookup(device_id)
        loop = asyncio.get_running_loop()
        transport = None

        try:
            transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol, remote_addr=(host, port)
            )
            transport.sendto(encode_message(cmd, data))
        except OSError as e:
            self.error_count += 1
            raise LanTransportError(f"LAN send to {host}:{port} failed: {e}") from e
        finally:
            if transport is not None:
                transport.close()

        self.commands_sent += 1
        logger.debug("lan_command_sent", device_id=device_id, cmd=cmd, host=host, port=port)

    async def set_power(self, device_id: str, on: bool) -> None:
        await self._send(device_id, "turn", {"value": 1 if on else 0})

    async def set_brightness(self, device_id: str, level: float) -> None:
        value = _clamp(level, BRIGHTNESS_MIN, BRIGHTNESS_MAX)
        await self._send(device_id, "brightness", {"value": value})

    async def set_color(self, device_id: str, color: RGB) -> None:
        await self._send(
            device_id,
            "colorwc",
            {
                "color": {
                    "r": _clamp(color.r, 0, 255),
                    "g": _clamp(color.g, 0, 255),
                    "b": _clamp(color.b, 0, 255),
                },
                "colorTemInKelvin": 0,
            },
        )

    async def set_color_temperature(self, device_id: str, kelvin: float) -> None:
        value = _clamp(kelvin, KELVIN_MIN, KELVIN_MAX)
        await self._send(
            device_id,
            "colorwc",
            {"color": {"r": 0, "g": 0, "b": 0}, "colorTemInKelvin": value},
        )

    async def get_status(self, device_id: str) -> DeviceState:
        """
        Query a device for its current state

        Raises:
            LanDeviceNotFoundError: If the device has not been discovered
            LanTimeoutError: If no reply arrives in time
            LanParseError: If the reply is malformed
        """
        host, port = self._lookup(device_id)
        loop = asyncio.get_running_loop()
        transport = None

        try:
            transport, protocol = await loop.create_datagram_endpoint(
                _StatusProtocol, remote_addr=(host, port)
            )
            transport.sendto(encode_message("devStatus", {}))
            raw = await asyncio.wait_for(protocol.reply, timeout=self.status_timeout)
        except asyncio.TimeoutError as e:
            self.error_count += 1
            raise LanTimeoutError(f"LAN status timeout for {device_id}") from e
        except OSError as e:
            self.error_count += 1
            raise LanTransportError(f"LAN status request to {host}:{port} failed: {e}") from e
        finally:
            if transport is not None:
                transport.close()

        message = decode_message(raw)
        try:
            reply = LanStatusReply.model_validate(message.data)
        except ValidationError as e:
            raise LanParseError(f"Malformed devStatus reply: {e}") from e

        return reply.to_device_state()

    def get_statistics(self) -> dict:
        return {
            "name": self.name,
            "known_devices": len(self._targets),
            "scans": self.scans,
            "commands_sent": self.commands_sent,
            "errors": self.error_count,
        }
