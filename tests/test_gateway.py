"""End-to-end tests: real gateway listener and loopback devices."""

import asyncio
import logging
from ipaddress import IPv4Address

import pytest

from roku_device import DeviceRegistry, RokuDevice
from roku_gateway import GatewayServer

LOGGER = logging.getLogger("roku-remote-test")


def make_config(tmp_path, ecp_port=8060, **overrides):
    config = {
        "listen_host": "127.0.0.1",
        "listen_port": 0,
        "ecp_port": ecp_port,
        "relay_timeout": 1.0,
        "relay_read_timeout": 1.0,
        "client_timeout": 2.0,
        "static_dir": str(tmp_path),
    }
    config.update(overrides)
    return config


def loopback_registry(*names):
    # Every device lives on 127.0.0.1; the relay port is the fake device's port
    return DeviceRegistry([RokuDevice(name, IPv4Address("127.0.0.1"), name) for name in names])


async def exchange(port, *chunks, pause=0.0):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        for chunk in chunks:
            writer.write(chunk)
            await writer.drain()
            if pause:
                await asyncio.sleep(pause)
        raw = await asyncio.wait_for(reader.read(), timeout=5.0)
    finally:
        writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, head.decode("latin-1"), body


def put_keypress(body):
    data = body.encode("utf-8")
    return b"PUT /keypress HTTP/1.1\r\nHost: gw\r\nContent-Length: %d\r\n\r\n" % len(data) + data


async def start_gateway(config, registry):
    gateway = GatewayServer(config, LOGGER, registry=registry)
    await gateway.start()
    return gateway


class TestGatewayDevices:
    """GET /devices over the wire."""

    @pytest.mark.asyncio
    async def test_devices(self, tmp_path):
        registry = DeviceRegistry([
            RokuDevice("Bedroom", IPv4Address("10.0.0.12"), "Upstairs"),
            RokuDevice("Living Room", IPv4Address("10.0.0.5"), "Living Room"),
        ])
        gateway = await start_gateway(make_config(tmp_path), registry)
        try:
            status, head, body = await exchange(gateway.port, b"GET /devices HTTP/1.1\r\nHost: gw\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 200
        assert "Content-Type: text/plain" in head
        assert body == b"Living Room,Bedroom"

    @pytest.mark.asyncio
    async def test_empty_registry(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            status, head, body = await exchange(gateway.port, b"GET /devices HTTP/1.1\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 200
        assert "Content-Length: 0" in head
        assert body == b""


class TestGatewayKeypress:
    """PUT /keypress relayed to a loopback device."""

    @pytest.mark.asyncio
    async def test_keypress_forwards_device_reply(self, tmp_path, device_server):
        reply = b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n"
        server, device_port, received = await device_server(reply)
        async with server:
            gateway = await start_gateway(make_config(tmp_path, device_port), loopback_registry("Living Room"))
            try:
                status, _, body = await exchange(gateway.port, put_keypress("device=Living Room&action=Home"))
            finally:
                await gateway.stop()
        assert status == 200
        assert received == [b"POST /keypress/Home HTTP/1.1\r\n\r\n"]
        assert body == reply

    @pytest.mark.asyncio
    async def test_body_arriving_in_pieces(self, tmp_path, device_server):
        server, device_port, received = await device_server()
        request = put_keypress("device=Living Room&action=Select")
        async with server:
            gateway = await start_gateway(make_config(tmp_path, device_port), loopback_registry("Living Room"))
            try:
                status, _, _ = await exchange(gateway.port, request[:40], request[40:70], request[70:], pause=0.05)
            finally:
                await gateway.stop()
        assert status == 200
        assert received == [b"POST /keypress/Select HTTP/1.1\r\n\r\n"]

    @pytest.mark.asyncio
    async def test_unreachable_device_then_server_keeps_serving(self, tmp_path):
        # Find a port with nothing listening on it
        probe = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        dead_port = probe.sockets[0].getsockname()[1]
        probe.close()
        await probe.wait_closed()

        registry = loopback_registry("Living Room")
        gateway = await start_gateway(make_config(tmp_path, dead_port), registry)
        try:
            status, _, body = await exchange(gateway.port, put_keypress("device=Living Room&action=Home"))
            assert status == 503
            assert b"Living Room" in body

            status, _, body = await exchange(gateway.port, b"GET /devices HTTP/1.1\r\n\r\n")
            assert status == 200
            assert body == b"Living Room"
        finally:
            await gateway.stop()
        assert registry.names() == ["Living Room"]

    @pytest.mark.asyncio
    async def test_unknown_device(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), loopback_registry("Living Room"))
        try:
            status, _, body = await exchange(gateway.port, put_keypress("device=Kitchen&action=Home"))
        finally:
            await gateway.stop()
        assert status == 400
        assert b"Kitchen" in body

    @pytest.mark.asyncio
    async def test_malformed_pair(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), loopback_registry("Living Room"))
        try:
            status, _, body = await exchange(gateway.port, put_keypress("device=Living Room&action"))
        finally:
            await gateway.stop()
        assert status == 400
        assert b"action" in body


class TestGatewayErrors:
    """Malformed requests, static files and timeouts."""

    @pytest.mark.asyncio
    async def test_malformed_request_line(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            status, _, _ = await exchange(gateway.port, b"GARBAGE\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 400

    @pytest.mark.asyncio
    async def test_bad_content_length(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            status, _, _ = await exchange(gateway.port, b"PUT /keypress HTTP/1.1\r\nContent-Length: x\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 400

    @pytest.mark.asyncio
    async def test_static_files(self, tmp_path):
        (tmp_path / "index.html").write_text("<html>remote</html>")
        (tmp_path / "index.js").write_text("console.log('hi');")
        (tmp_path.parent / "secret.txt").write_text("secret")
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            index = await exchange(gateway.port, b"GET / HTTP/1.1\r\n\r\n")
            script = await exchange(gateway.port, b"GET /index.js HTTP/1.1\r\n\r\n")
            missing = await exchange(gateway.port, b"GET /nope.css HTTP/1.1\r\n\r\n")
            traversal = await exchange(gateway.port, b"GET /../secret.txt HTTP/1.1\r\n\r\n")
        finally:
            await gateway.stop()
        assert index[0] == 200 and "text/html" in index[1] and index[2] == b"<html>remote</html>"
        assert script[0] == 200 and "text/javascript" in script[1]
        assert missing[0] == 404
        assert traversal[0] == 400
        assert traversal[2] != b"secret"

    @pytest.mark.asyncio
    async def test_unknown_route(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            status, _, _ = await exchange(gateway.port, b"DELETE /devices HTTP/1.1\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 404

    @pytest.mark.asyncio
    async def test_incomplete_request_times_out(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path, client_timeout=0.2), DeviceRegistry())
        try:
            status, _, _ = await exchange(gateway.port, b"GET /dev")
        finally:
            await gateway.stop()
        assert status == 408

    @pytest.mark.asyncio
    async def test_stop_drops_open_connections(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path, client_timeout=30.0), DeviceRegistry())
        reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
        writer.write(b"GET /dev")
        await writer.drain()
        await asyncio.sleep(0.05)
        assert len(gateway.connections) == 1
        await asyncio.wait_for(gateway.stop(), timeout=2.0)
        try:
            data = await asyncio.wait_for(reader.read(), timeout=2.0)
        except ConnectionResetError:
            data = b""
        writer.close()
        await asyncio.sleep(0.05)
        assert data == b""
        assert not gateway.connections

    @pytest.mark.asyncio
    async def test_encoded_nul_in_path(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path), DeviceRegistry())
        try:
            status, _, _ = await exchange(gateway.port, b"GET /%00 HTTP/1.1\r\n\r\n")
        finally:
            await gateway.stop()
        assert status == 404

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, tmp_path):
        gateway = await start_gateway(make_config(tmp_path, client_timeout=30.0), DeviceRegistry())
        try:
            status, _, _ = await exchange(
                gateway.port, b"PUT /keypress HTTP/1.1\r\nContent-Length: 999999999\r\n\r\n"
            )
        finally:
            await gateway.stop()
        assert status == 400
