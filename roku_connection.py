"""
ECP connection layer - short-lived TCP connections to Roku devices.

Each command opens its own connection to the device's control port, writes an
HTTP-shaped ECP request and reads the reply. Nothing is kept open between
requests, so concurrent handlers never share a device socket.
"""

from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple, Optional
from urllib.parse import quote

from roku_device import RokuDevice
from roku_errors import DeviceUnreachable
from roku_http import HEADER_END, content_length

ECP_PORT = 8060

_logger = logging.getLogger(__name__)


def keypress_command(action: str) -> bytes:
    """ECP keypress request for an action token such as Home or Select."""
    return f"POST /keypress/{quote(action, safe='')} HTTP/1.1\r\n\r\n".encode("utf-8")


def _expected_size(buffer: bytes) -> Optional[int]:
    """Total reply size once the head is in and declares Content-Length."""
    end = buffer.find(HEADER_END)
    if end == -1:
        return None
    try:
        length = content_length(buffer[:end].decode("latin-1"))
    except ValueError:
        return None
    if length is None:
        return None
    return end + len(HEADER_END) + length


async def read_device_response(reader: asyncio.StreamReader, timeout: float) -> bytes:
    """
    Read a device reply until EOF, or until the Content-Length body is in.

    Bounded by `timeout` overall. If the deadline passes after some bytes
    arrived, the partial reply is returned; with nothing received,
    asyncio.TimeoutError is raised.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    buffer = b""
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            if buffer:
                return buffer
            raise asyncio.TimeoutError()
        try:
            chunk = await asyncio.wait_for(reader.read(4096), timeout=remaining)
        except asyncio.TimeoutError:
            if buffer:
                return buffer
            raise
        if not chunk:
            return buffer
        buffer += chunk
        expected = _expected_size(buffer)
        if expected is not None and len(buffer) >= expected:
            return buffer


async def close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream writer, ignoring errors from an already-dead socket."""
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


# -----------------------------------------------------------------------------
# Command relay
# -----------------------------------------------------------------------------


class RelayOutcome(NamedTuple):
    device: RokuDevice
    action: str
    reply: bytes


class CommandRelay:
    """
    Forwards key presses to devices over a fresh connection per command.

    The device's reply is read and returned verbatim so the gateway can pass
    it through to the client. Connect, write and read are all timeout-bounded;
    any failure becomes DeviceUnreachable.
    """

    def __init__(
        self,
        port: int = ECP_PORT,
        connect_timeout: float = 3.0,
        read_timeout: float = 3.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.logger = logger or _logger

    async def send(self, device: RokuDevice, action: str) -> RelayOutcome:
        """Send `action` to `device` and return the device's reply."""
        host = str(device.address)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, self.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DeviceUnreachable(
                f"Timed out connecting to {device.name} at {host}:{self.port}"
            ) from e
        except OSError as e:
            raise DeviceUnreachable(
                f"Could not connect to {device.name} at {host}:{self.port}: {e}"
            ) from e

        try:
            writer.write(keypress_command(action))
            await writer.drain()
            self.logger.debug("Sent keypress %s to %s (%s)", action, device.name, host)
            reply = await read_device_response(reader, self.read_timeout)
        except asyncio.TimeoutError as e:
            raise DeviceUnreachable(f"No reply from {device.name} at {host}:{self.port}") from e
        except OSError as e:
            raise DeviceUnreachable(f"Failed to send to {device.name} at {host}:{self.port}: {e}") from e
        finally:
            await close_writer(writer)

        if not reply:
            self.logger.debug("Device %s closed without a reply to %s", device.name, action)
        return RelayOutcome(device, action, reply)
