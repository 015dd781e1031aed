"""
Roku discovery - find ECP devices on the local /24.

Primary strategy is a unicast sweep: every candidate address in the host's
/24 (below a configurable limit) gets a timeout-bounded TCP connect on port
8060 and a device-info query. Any 2xx reply whose XML body carries a friendly
name and a location is a Roku. An optional SSDP M-SEARCH for roku:ecp runs
afterwards and adds anything the sweep missed.

Usage:
    from roku_discovery import run_discovery

    async def main():
        registry = await run_discovery(config, logger)
        for device in registry:
            print(device.name, device.address)
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import xml.etree.ElementTree as ET
from ipaddress import IPv4Address
from typing import Iterator, Optional
from urllib.parse import urljoin

import httpx

from roku_connection import ECP_PORT, close_writer, read_device_response
from roku_device import DeviceRegistry, RokuDevice
from roku_errors import (
    HostAddressUnavailable,
    MalformedDeviceResponse,
    ProbeError,
    ProbeRefused,
    ProbeTimeout,
    UnsupportedAddressFamily,
)
from roku_http import HEADER_END, content_length

SUBNET_SEARCH_LIMIT = 25  # last host octet to probe (exclusive)
DEVICE_INFO_QUERY = b"GET /query/device-info HTTP/1.1\r\n\r\n"

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900
SSDP_SEARCH_TARGET = "roku:ecp"

_logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Host address
# -----------------------------------------------------------------------------

def get_local_ip() -> Optional[str]:
    """Address of the interface used for the default route, or None."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.settimeout(2.0)
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return None


def resolve_host_address(configured: Optional[str] = None) -> IPv4Address:
    """
    Return the host address to derive the scan range from.

    Uses `configured` when set, otherwise the local interface address.
    Raises HostAddressUnavailable if neither yields an address and
    UnsupportedAddressFamily for IPv6.
    """
    ip = (configured or "").strip() or get_local_ip()
    if not ip:
        raise HostAddressUnavailable(
            "Could not determine host address. Set host_address in config."
        )
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError as e:
        raise HostAddressUnavailable(f"Invalid host address: {ip!r}") from e
    if not isinstance(addr, IPv4Address):
        raise UnsupportedAddressFamily(f"Host address {addr} is not IPv4; only IPv4 scanning is supported")
    return addr


def candidate_addresses(
    host: IPv4Address, limit: int = SUBNET_SEARCH_LIMIT
) -> Iterator[IPv4Address]:
    """
    Yield a.b.c.1 up to a.b.c.(limit - 1) for the host's /24.

    The /24 mask is assumed, not read from the interface.
    """
    if not 2 <= limit <= 256:
        raise ValueError(f"subnet search limit must be between 2 and 256, got {limit}")
    base = int(host) & 0xFFFFFF00
    for i in range(1, limit):
        yield IPv4Address(base | i)


# -----------------------------------------------------------------------------
# Response classification
# -----------------------------------------------------------------------------

def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _first_text(root: ET.Element, name: str) -> Optional[str]:
    """Text of the first element named `name`, or None if missing or empty."""
    for elem in root.iter():
        if isinstance(elem.tag, str) and _local_name(elem.tag) == name:
            if elem.text and elem.text.strip():
                return elem.text
            return None
    return None


def parse_device_info(body: bytes) -> tuple[str, str]:
    """Extract (friendly name, location) from a device-info XML body."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedDeviceResponse(f"Invalid device-info XML: {e}") from e
    name = _first_text(root, "friendly-device-name")
    if name is None:
        raise MalformedDeviceResponse("device-info has no friendly-device-name")
    location = _first_text(root, "user-device-location")
    if location is None:
        raise MalformedDeviceResponse("device-info has no user-device-location")
    return name, location


def parse_status_code(status_line: str) -> Optional[int]:
    """Status code from an HTTP status line, or None if it is not one."""
    parts = status_line.split()
    if len(parts) >= 2 and parts[0].upper().startswith("HTTP/") and parts[1].isdigit():
        return int(parts[1])
    return None


def classify_response(raw: bytes) -> tuple[str, str]:
    """
    Classify a raw device-info reply. Returns (friendly name, location).

    Raises MalformedDeviceResponse for a missing head/body boundary, a non-2xx
    status, or XML without both fields.
    """
    end = raw.find(HEADER_END)
    if end == -1:
        raise MalformedDeviceResponse("Response has no header/body boundary")
    head = raw[:end].decode("latin-1")
    body = raw[end + len(HEADER_END):]

    status_line = head.split("\r\n", 1)[0].strip()
    code = parse_status_code(status_line)
    if code is None or not 200 <= code < 300:
        raise MalformedDeviceResponse(f"Unexpected status line: {status_line[:100]!r}")

    try:
        length = content_length(head)
    except ValueError:
        length = None
    if length is not None:
        body = body[:length]
    return parse_device_info(body)


# -----------------------------------------------------------------------------
# Probe
# -----------------------------------------------------------------------------

async def probe_device(
    address: IPv4Address,
    port: int = ECP_PORT,
    connect_timeout: float = 3.0,
    read_timeout: float = 5.0,
) -> bytes:
    """
    Connect to (address, port), send the device-info query and return the
    raw reply. Raises ProbeTimeout or ProbeRefused when nothing answers.
    """
    host = str(address)
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise ProbeTimeout(f"{host}:{port} connect timed out") from e
    except OSError as e:
        raise ProbeRefused(f"{host}:{port} {e}") from e

    try:
        writer.write(DEVICE_INFO_QUERY)
        await writer.drain()
        return await read_device_response(reader, read_timeout)
    except asyncio.TimeoutError as e:
        raise ProbeTimeout(f"{host}:{port} sent no response") from e
    except OSError as e:
        raise ProbeRefused(f"{host}:{port} {e}") from e
    finally:
        await close_writer(writer)


# -----------------------------------------------------------------------------
# SSDP (secondary strategy)
# -----------------------------------------------------------------------------

def ssdp_search_request(mx: int = 3) -> bytes:
    return "\r\n".join([
        "M-SEARCH * HTTP/1.1",
        f"HOST: {SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}",
        'MAN: "ssdp:discover"',
        f"ST: {SSDP_SEARCH_TARGET}",
        f"MX: {mx}",
        "", "",
    ]).encode("utf-8")


def parse_ssdp_headers(msg: str) -> dict[str, str]:
    """Header names lowercased; the status line is skipped."""
    headers: dict[str, str] = {}
    for line in msg.split("\r\n")[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers.setdefault(name.strip().lower(), value.strip())
    return headers


class SSDPSearchProtocol(asyncio.DatagramProtocol):
    """Collects LOCATION URLs from roku:ecp M-SEARCH replies."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger
        self.locations: list[str] = []
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        headers = parse_ssdp_headers(data.decode("utf-8", errors="ignore"))
        st = headers.get("st", "")
        location = headers.get("location")
        if SSDP_SEARCH_TARGET not in st.lower() or not location:
            return
        if location not in self.locations:
            self.logger.debug("SSDP reply from %s: %s", addr[0], location)
            self.locations.append(location)

    def error_received(self, exc: Exception) -> None:
        self.logger.debug("SSDP error: %s", exc)


async def ssdp_search(timeout: float = 3.0, logger: Optional[logging.Logger] = None) -> list[str]:
    """Send one M-SEARCH and collect LOCATION URLs for `timeout` seconds."""
    logger = logger or _logger
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: SSDPSearchProtocol(logger),
        local_addr=("0.0.0.0", 0),
    )
    try:
        transport.sendto(ssdp_search_request(), (SSDP_MCAST_GRP, SSDP_MCAST_PORT))
        await asyncio.sleep(timeout)
    finally:
        transport.close()
    return list(protocol.locations)


async def fetch_device_info(location: str, timeout: float = 5.0) -> RokuDevice:
    """Fetch query/device-info relative to an SSDP LOCATION URL."""
    try:
        address = IPv4Address(httpx.URL(location).host)
    except (ValueError, httpx.InvalidURL) as e:
        raise MalformedDeviceResponse(f"LOCATION is not an IPv4 URL: {location!r}") from e
    url = urljoin(location, "query/device-info")
    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await client.get(url)
    if not 200 <= r.status_code < 300:
        raise MalformedDeviceResponse(f"{url} returned {r.status_code}")
    name, device_location = parse_device_info(r.content)
    return RokuDevice(name, address, device_location)


# -----------------------------------------------------------------------------
# Scanner
# -----------------------------------------------------------------------------

class DiscoveryScanner:
    """
    Probes every candidate address and returns the Rokus found, ascending by
    address.

    Probes run concurrently up to `concurrency` at a time; results are
    gathered in candidate order so the outcome does not depend on which probe
    finishes first. `concurrency=1` gives a strictly sequential sweep.
    """

    def __init__(
        self,
        host_address: IPv4Address,
        limit: int = SUBNET_SEARCH_LIMIT,
        port: int = ECP_PORT,
        connect_timeout: float = 3.0,
        read_timeout: float = 5.0,
        concurrency: int = 16,
        ssdp: bool = False,
        ssdp_timeout: float = 3.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not 2 <= limit <= 256:
            raise ValueError(f"subnet search limit must be between 2 and 256, got {limit}")
        self.host_address = host_address
        self.limit = limit
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.concurrency = max(1, int(concurrency))
        self.ssdp = ssdp
        self.ssdp_timeout = ssdp_timeout
        self.logger = logger or _logger

    async def probe(self, address: IPv4Address) -> Optional[RokuDevice]:
        """Probe one candidate. Returns None when there is no usable device."""
        self.logger.debug("Testing %s:%d", address, self.port)
        try:
            raw = await probe_device(address, self.port, self.connect_timeout, self.read_timeout)
            name, location = classify_response(raw)
        except ProbeError as e:
            self.logger.debug("No device at %s: %s", address, e)
            return None
        except MalformedDeviceResponse as e:
            self.logger.warning("Ignoring %s:%d: %s", address, self.port, e)
            return None
        self.logger.info("Found device '%s' at %s (%s)", name, address, location)
        return RokuDevice(name, address, location)

    async def scan(self) -> list[RokuDevice]:
        """Unicast sweep of the candidate range."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(address: IPv4Address) -> Optional[RokuDevice]:
            async with semaphore:
                return await self.probe(address)

        candidates = list(candidate_addresses(self.host_address, self.limit))
        self.logger.info(
            "Scanning %s-%s on port %d",
            candidates[0], candidates[-1], self.port,
        )
        results = await asyncio.gather(*(bounded(a) for a in candidates))
        return [d for d in results if d is not None]

    async def ssdp_scan(self) -> list[RokuDevice]:
        """Multicast probe; failures are logged and yield no devices."""
        try:
            locations = await ssdp_search(self.ssdp_timeout, self.logger)
        except OSError as e:
            self.logger.warning("SSDP search failed: %s", e)
            return []
        devices = []
        for location in locations:
            try:
                devices.append(await fetch_device_info(location, self.read_timeout))
            except (httpx.HTTPError, MalformedDeviceResponse) as e:
                self.logger.warning("Ignoring SSDP device at %s: %s", location, e)
        return devices

    async def discover(self) -> list[RokuDevice]:
        devices = await self.scan()
        if self.ssdp:
            known = {d.address for d in devices}
            for device in await self.ssdp_scan():
                if device.address not in known:
                    self.logger.info("Found device '%s' at %s via SSDP", device.name, device.address)
                    devices.append(device)
                    known.add(device.address)
            devices.sort(key=lambda d: d.address)
        self.logger.info("Discovery complete: %d device(s)", len(devices))
        return devices


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

async def run_discovery(config: dict, logger: logging.Logger) -> DeviceRegistry:
    """
    Resolve the host address and run a full discovery from config.

    Raises HostAddressUnavailable / UnsupportedAddressFamily, and ValueError
    for an out-of-range subnet_search_limit; everything else is handled per
    candidate.
    """
    host = resolve_host_address(config.get("host_address"))
    logger.info("Host address %s", host)
    scanner = DiscoveryScanner(
        host,
        limit=int(config.get("subnet_search_limit", SUBNET_SEARCH_LIMIT)),
        port=int(config.get("ecp_port", ECP_PORT)),
        connect_timeout=float(config.get("probe_timeout", 3.0)),
        read_timeout=float(config.get("probe_read_timeout", 5.0)),
        concurrency=int(config.get("scan_concurrency", 16)),
        ssdp=bool(config.get("enable_ssdp")),
        ssdp_timeout=float(config.get("ssdp_timeout", 3.0)),
        logger=logger,
    )
    return DeviceRegistry(await scanner.discover())
