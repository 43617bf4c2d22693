"""
Unit tests for LanClient

Tests message decoding, scan reply parsing, discovery, control datagrams
and status queries against loopback UDP sockets standing in for devices.
"""
import asyncio
import json
import socket
from typing import List, Optional

import pytest

from goveed.models import RGB, DeviceSource
from goveed.transport.lan import (
    LanClient,
    LanDeviceNotFoundError,
    LanParseError,
    LanTimeoutError,
    LanTransportError,
    decode_message,
    encode_message,
    parse_scan_reply,
)

SCAN_PAYLOAD = encode_message("scan", {"account_topic": "reserve"})


def free_udp_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def scan_reply(device_id: str, ip: str = "127.0.0.1", **extra) -> bytes:
    data = {"ip": ip, "device": device_id, "sku": "H6008", **extra}
    return json.dumps({"msg": {"cmd": "scan", "data": data}}).encode()


class FakeDevice(asyncio.DatagramProtocol):
    """Loopback UDP endpoint that records datagrams and answers with canned replies."""

    def __init__(self, replies: Optional[List[bytes]] = None, reply_port: Optional[int] = None):
        self.replies = replies or []
        self.reply_port = reply_port
        self.received: asyncio.Queue = asyncio.Queue()
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.received.put_nowait(data)
        target = ("127.0.0.1", self.reply_port) if self.reply_port else addr
        for reply in self.replies:
            self.transport.sendto(reply, target)


async def start_fake_device(**kwargs):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: FakeDevice(**kwargs), local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, protocol, port


async def next_message(device: FakeDevice) -> dict:
    raw = await asyncio.wait_for(device.received.get(), timeout=2.0)
    return json.loads(raw)


class TestMessageCodec:
    """Tests for encode_message / decode_message."""

    def test_encode_wraps_command_in_envelope(self):
        """Test that commands are wrapped as msg.cmd / msg.data."""
        assert json.loads(encode_message("turn", {"value": 1})) == {
            "msg": {"cmd": "turn", "data": {"value": 1}}
        }

    def test_scan_payload_matches_protocol(self):
        """Test the exact scan envelope."""
        assert json.loads(SCAN_PAYLOAD) == {
            "msg": {"cmd": "scan", "data": {"account_topic": "reserve"}}
        }

    def test_decode_nested_data(self):
        """Test decoding data under msg.data."""
        message = decode_message(b'{"msg":{"cmd":"devStatus","data":{"onOff":1}}}')
        assert message.cmd == "devStatus"
        assert message.data == {"onOff": 1}

    def test_decode_top_level_data(self):
        """Test decoding data at the top level."""
        message = decode_message(b'{"cmd":"scan","data":{"device":"abc"}}')
        assert message.cmd == "scan"
        assert message.data == {"device": "abc"}

    def test_decode_string_data(self):
        """Test that string data is decoded as JSON."""
        message = decode_message(b'{"msg":{"cmd":"scan","data":"{\\"device\\":\\"abc\\"}"}}')
        assert message.data == {"device": "abc"}

    def test_decode_undecodable_string_data(self):
        """Test that a non-JSON data string becomes an empty dict."""
        message = decode_message(b'{"msg":{"cmd":"scan","data":"garbage"}}')
        assert message.data == {}

    def test_decode_invalid_json_raises(self):
        """Test that malformed datagrams raise LanParseError."""
        with pytest.raises(LanParseError):
            decode_message(b"not json")

    def test_decode_non_object_raises(self):
        """Test that a JSON array is rejected."""
        with pytest.raises(LanParseError):
            decode_message(b"[1, 2, 3]")


class TestParseScanReply:
    """Tests for turning scan replies into devices."""

    def test_full_reply(self):
        """Test a complete scan reply."""
        raw = scan_reply("AA:BB:CC", ip="192.168.1.50", deviceName="Lamp", port=4010)
        device = parse_scan_reply(raw, "10.0.0.1", SCAN_PAYLOAD)

        assert device.id == "AA:BB:CC"
        assert device.name == "Lamp"
        assert device.model == "H6008"
        assert device.sku == "H6008"
        assert device.lan_ip == "192.168.1.50"
        assert device.lan_port == 4010
        assert device.source == DeviceSource.LOCAL

    def test_falls_back_to_sender_address_and_control_port(self):
        """Test defaults when the reply lacks ip and port."""
        raw = json.dumps({"msg": {"cmd": "scan", "data": {"device": "AA:BB"}}}).encode()
        device = parse_scan_reply(raw, "10.0.0.7", SCAN_PAYLOAD, control_port=4003)

        assert device.lan_ip == "10.0.0.7"
        assert device.lan_port == 4003
        assert device.name == "Govee"
        assert device.model == "unknown"

    def test_name_falls_back_to_sku(self):
        """Test that the SKU is used as the name when no name is given."""
        device = parse_scan_reply(scan_reply("AA:BB"), "10.0.0.7", SCAN_PAYLOAD)
        assert device.name == "H6008"

    def test_own_scan_echo_is_dropped(self):
        """Test that our own scan packet looped back is ignored."""
        assert parse_scan_reply(SCAN_PAYLOAD, "127.0.0.1", SCAN_PAYLOAD) is None

    def test_reply_without_id_is_ignored(self):
        """Test that replies without a string device id are ignored."""
        raw = json.dumps({"msg": {"cmd": "scan", "data": {"ip": "10.0.0.1"}}}).encode()
        assert parse_scan_reply(raw, "10.0.0.1", SCAN_PAYLOAD) is None

        raw = json.dumps({"msg": {"cmd": "scan", "data": {"device": 12345}}}).encode()
        assert parse_scan_reply(raw, "10.0.0.1", SCAN_PAYLOAD) is None


class TestLanControl:
    """Tests for fire-and-forget control datagrams."""

    @pytest.mark.asyncio
    async def test_unknown_device_raises_not_found(self):
        """Test that controlling an undiscovered device fails."""
        client = LanClient()

        with pytest.raises(LanDeviceNotFoundError):
            await client.set_power("AA:BB:CC", True)

    @pytest.mark.asyncio
    async def test_not_found_is_a_transport_error(self):
        """Test the error hierarchy."""
        client = LanClient()

        with pytest.raises(LanTransportError):
            await client.get_status("AA:BB:CC")

    @pytest.mark.asyncio
    async def test_power_command(self):
        """Test the turn command."""
        transport, device, port = await start_fake_device()
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            await client.set_power("AA:BB:CC", True)
            assert await next_message(device) == {"msg": {"cmd": "turn", "data": {"value": 1}}}

            await client.set_power("aabbcc", False)
            assert await next_message(device) == {"msg": {"cmd": "turn", "data": {"value": 0}}}
            assert client.commands_sent == 2
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_brightness_is_clamped(self):
        """Test that brightness is rounded and clamped to 1-100."""
        transport, device, port = await start_fake_device()
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            await client.set_brightness("AA:BB:CC", 150)
            assert (await next_message(device))["msg"]["data"] == {"value": 100}

            await client.set_brightness("AA:BB:CC", 0)
            assert (await next_message(device))["msg"]["data"] == {"value": 1}

            await client.set_brightness("AA:BB:CC", 42.6)
            assert (await next_message(device))["msg"]["data"] == {"value": 43}
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_color_command(self):
        """Test that colors are sent with colorwc and a zero color temperature."""
        transport, device, port = await start_fake_device()
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            await client.set_color("AA:BB:CC", RGB(r=255, g=128, b=0))
            assert await next_message(device) == {
                "msg": {
                    "cmd": "colorwc",
                    "data": {"color": {"r": 255, "g": 128, "b": 0}, "colorTemInKelvin": 0},
                }
            }
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_color_temperature_is_clamped(self):
        """Test that Kelvin values are clamped to 2000-9000."""
        transport, device, port = await start_fake_device()
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            await client.set_color_temperature("AA:BB:CC", 12000)
            data = (await next_message(device))["msg"]["data"]
            assert data == {"color": {"r": 0, "g": 0, "b": 0}, "colorTemInKelvin": 9000}

            await client.set_color_temperature("AA:BB:CC", 1500)
            data = (await next_message(device))["msg"]["data"]
            assert data["colorTemInKelvin"] == 2000
        finally:
            transport.close()


class TestLanStatus:
    """Tests for devStatus queries."""

    @pytest.mark.asyncio
    async def test_status_reply_is_decoded(self):
        """Test mapping a devStatus reply to DeviceState."""
        reply = json.dumps(
            {
                "msg": {
                    "cmd": "devStatus",
                    "data": {
                        "onOff": 1,
                        "brightness": 40,
                        "color": {"r": 255, "g": 0, "b": 10},
                        "colorTemInKelvin": 3000,
                    },
                }
            }
        ).encode()
        transport, device, port = await start_fake_device(replies=[reply])
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            state = await client.get_status("AA:BB:CC")

            assert await next_message(device) == {"msg": {"cmd": "devStatus", "data": {}}}
            assert state.online is True
            assert state.power is True
            assert state.brightness == 40
            assert state.color_rgb == RGB(r=255, g=0, b=10)
            assert state.color_temperature_k == 3000
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_status_timeout(self):
        """Test that a silent device raises LanTimeoutError."""
        transport, device, port = await start_fake_device()
        try:
            client = LanClient(status_timeout=0.1)
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            with pytest.raises(LanTimeoutError):
                await client.get_status("AA:BB:CC")
            assert client.error_count == 1
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_malformed_status_reply(self):
        """Test that a non-JSON reply raises LanParseError."""
        transport, device, port = await start_fake_device(replies=[b"\x00garbage"])
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            with pytest.raises(LanParseError):
                await client.get_status("AA:BB:CC")
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_invalid_status_fields(self):
        """Test that a reply with wrongly typed fields raises LanParseError."""
        reply = json.dumps({"msg": {"cmd": "devStatus", "data": {"brightness": "high"}}}).encode()
        transport, device, port = await start_fake_device(replies=[reply])
        try:
            client = LanClient()
            client.add_target("AA:BB:CC", "127.0.0.1", port)

            with pytest.raises(LanParseError):
                await client.get_status("AA:BB:CC")
        finally:
            transport.close()


class TestLanDiscovery:
    """Tests for the scan / reply cycle."""

    @pytest.mark.asyncio
    async def test_discovery_collects_distinct_devices(self):
        """Test that duplicate replies, echoes and junk collapse to distinct devices."""
        response_port = free_udp_port()
        replies = [
            scan_reply("AA:BB:CC:DD", deviceName="Lamp"),
            scan_reply("aa:bb:cc:dd", deviceName="Lamp"),
            scan_reply("11:22:33:44", deviceName="Strip"),
            SCAN_PAYLOAD,
            b"junk",
            json.dumps({"msg": {"cmd": "scan", "data": {"ip": "127.0.0.1"}}}).encode(),
        ]
        transport, device, scan_port = await start_fake_device(
            replies=replies, reply_port=response_port
        )
        try:
            client = LanClient(
                multicast_address="127.0.0.1",
                scan_port=scan_port,
                response_port=response_port,
                discovery_timeout=0.3,
            )

            devices = await client.discover()

            assert await next_message(device) == json.loads(SCAN_PAYLOAD)
            assert sorted(d.normalized_id for d in devices) == ["11223344", "aabbccdd"]
            assert all(d.source == DeviceSource.LOCAL for d in devices)
            assert sorted(client.known_device_ids) == ["11223344", "aabbccdd"]
            assert client.scans == 1
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_discovery_rebuilds_table(self):
        """Test that a scan with no replies clears previously known devices."""
        response_port = free_udp_port()
        transport, device, scan_port = await start_fake_device(reply_port=response_port)
        try:
            client = LanClient(
                multicast_address="127.0.0.1",
                scan_port=scan_port,
                response_port=response_port,
                discovery_timeout=0.1,
            )
            client.add_target("AA:BB", "127.0.0.1", 4003)

            assert await client.discover() == []
            assert client.known_device_ids == []

            with pytest.raises(LanDeviceNotFoundError):
                await client.set_power("AA:BB", True)
        finally:
            transport.close()

    @pytest.mark.asyncio
    async def test_listener_bind_failure_raises(self):
        """Test that an occupied response port raises LanTransportError."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("", 0))
        port = blocker.getsockname()[1]
        try:
            client = LanClient(response_port=port, discovery_timeout=0.1)

            with pytest.raises(LanTransportError):
                await client.discover()
            assert client.known_device_ids == []
        finally:
            blocker.close()
