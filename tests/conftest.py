"""Shared fixtures: fake ECP devices, on a simulated network or on loopback."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest


def device_info_body(name="Living Room", location="Living Room"):
    return (
        '<?xml version="1.0" encoding="UTF-8" ?>\n'
        "<device-info>\n"
        "  <udn>28001240-0000-1000-8000-d83134b1d2aa</udn>\n"
        "  <vendor-name>Roku</vendor-name>\n"
        f"  <friendly-device-name>{name}</friendly-device-name>\n"
        f"  <user-device-location>{location}</user-device-location>\n"
        "</device-info>\n"
    ).encode("utf-8")


def http_reply(body=b"", status="200 OK"):
    head = (
        f"HTTP/1.1 {status}\r\n"
        'Content-Type: text/xml; charset="utf-8"\r\n'
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + body


def device_info_reply(name="Living Room", location="Living Room"):
    return http_reply(device_info_body(name, location))


class FakeNetwork:
    """
    Stands in for asyncio.open_connection.

    Hosts in `replies` accept and answer with the given bytes, hosts in
    `hanging` never complete the connect, everything else refuses.
    """

    def __init__(self):
        self.replies = {}
        self.delays = {}
        self.hanging = set()
        self.sent = {}
        self.connects = []

    async def open_connection(self, host, port):
        self.connects.append((host, port))
        if host in self.hanging:
            await asyncio.sleep(60)
        if host in self.delays:
            await asyncio.sleep(self.delays[host])
        if host not in self.replies:
            raise ConnectionRefusedError(f"Connect call failed ({host!r}, {port})")

        reader = asyncio.StreamReader()
        reader.feed_data(self.replies[host])
        reader.feed_eof()

        sent = self.sent.setdefault((host, port), [])
        writer = MagicMock()
        writer.write.side_effect = sent.append
        writer.drain = AsyncMock()
        writer.wait_closed = AsyncMock()
        return reader, writer


@pytest.fixture
def fake_network(monkeypatch):
    net = FakeNetwork()
    monkeypatch.setattr(asyncio, "open_connection", net.open_connection)
    return net


@pytest.fixture
def device_server():
    """
    Factory for a loopback ECP device. Returns (server, port, received);
    `received` collects each request head the device gets.
    """

    async def start(reply=b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n", silent=False):
        received = []

        async def handle(reader, writer):
            try:
                received.append(await reader.readuntil(b"\r\n\r\n"))
                if silent:
                    # Wait for the client to give up and close
                    await reader.read()
                else:
                    writer.write(reply)
                    await writer.drain()
            except (asyncio.IncompleteReadError, ConnectionError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        return server, server.sockets[0].getsockname()[1], received

    return start
