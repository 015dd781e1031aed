#!/usr/bin/env python3
"""
Roku Remote Gateway - browser remote control for Roku devices on the LAN.

Discovers Roku devices once at startup (ECP device-info sweep of the local
/24), then serves a small HTTP interface: GET /devices lists them and
PUT /keypress relays a key press to the chosen device on port 8060.

Usage:
    python roku_gateway.py [--config config.yaml]

    Or with environment variables:
    HOST_ADDRESS=192.168.1.20 LISTEN_PORT=8080 python roku_gateway.py
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Set

import yaml

from roku_connection import ECP_PORT, CommandRelay
from roku_device import DeviceRegistry
from roku_discovery import SUBNET_SEARCH_LIMIT, run_discovery
from roku_dispatch import Dispatcher, RelayAction
from roku_errors import (
    GatewayError,
    HostAddressUnavailable,
    MalformedRequest,
    UnsupportedAddressFamily,
)
from roku_http import Request, Response, parse_request, request_complete
from static_assets import DEFAULT_STATIC_DIR, StaticAssets

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "host_address": "",
    "subnet_search_limit": SUBNET_SEARCH_LIMIT,
    "ecp_port": ECP_PORT,
    "probe_timeout": 3.0,
    "probe_read_timeout": 5.0,
    "scan_concurrency": 16,
    "enable_ssdp": False,
    "ssdp_timeout": 3.0,
    "listen_host": "0.0.0.0",
    "listen_port": 8080,
    "relay_timeout": 3.0,
    "relay_read_timeout": 3.0,
    "client_timeout": 10.0,
    "static_dir": "",
    "log_level": "INFO",
}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[Path] = None) -> dict:
    """
    Load configuration from YAML with environment overrides.

    An explicit path must exist. Without one, config.yaml next to this file is
    used if present, otherwise the defaults.
    """
    config = DEFAULTS.copy()

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path: Optional[Path] = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
        if not path.exists():
            path = None
    if path:
        with open(path) as f:
            config.update(yaml.safe_load(f) or {})

    # Environment overrides
    if os.getenv("HOST_ADDRESS"):
        config["host_address"] = os.getenv("HOST_ADDRESS")
    if os.getenv("LISTEN_HOST"):
        config["listen_host"] = os.getenv("LISTEN_HOST")
    if os.getenv("LISTEN_PORT"):
        config["listen_port"] = int(os.getenv("LISTEN_PORT"))
    if os.getenv("SUBNET_SEARCH_LIMIT"):
        config["subnet_search_limit"] = int(os.getenv("SUBNET_SEARCH_LIMIT"))
    if os.getenv("ENABLE_SSDP"):
        config["enable_ssdp"] = _env_bool(os.getenv("ENABLE_SSDP"))
    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL")

    return config


# -----------------------------------------------------------------------------
# Client connection handler
# -----------------------------------------------------------------------------

class GatewayHandler(asyncio.Protocol):
    """
    Handles a single client connection: frame, parse, dispatch, optionally
    relay to a device, write one response, close.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        relay: CommandRelay,
        logger: logging.Logger,
        connections: Optional[Set["GatewayHandler"]] = None,
        client_timeout: float = 10.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.relay = relay
        self.logger = logger
        self.connections = connections if connections is not None else set()
        self.client_timeout = client_timeout
        self.transport: Optional[asyncio.Transport] = None
        self._buffer = b""
        self._peername: Optional[tuple] = None
        self._request: Optional[Request] = None
        self._task: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._responded = False

    @property
    def client_ip(self) -> str:
        return self._peername[0] if self._peername else "?"

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport
        self._peername = transport.get_extra_info("peername")
        self.connections.add(self)
        if self.client_timeout and self.client_timeout > 0:
            self._timeout_handle = asyncio.get_running_loop().call_later(
                self.client_timeout, self._on_timeout
            )

    def data_received(self, data: bytes) -> None:
        if self._responded or self._request is not None:
            return
        self._buffer += data
        try:
            if not request_complete(self._buffer):
                return
            request = parse_request(self._buffer)
        except MalformedRequest as e:
            self.logger.info("Client %s sent a malformed request: %s", self.client_ip, e.message)
            self._write(Response.from_error(e))
            return
        self._cancel_timeout()
        self._request = request
        self._handle(request)

    def eof_received(self) -> Optional[bool]:
        if self._task is not None and not self._task.done():
            # Half-closed client still waiting for the relay result
            return True
        if self._request is None and not self._responded and self._buffer:
            self._write(Response.from_error(MalformedRequest("Incomplete request")))
        return None

    def _handle(self, request: Request) -> None:
        try:
            result = self.dispatcher.dispatch(request)
        except Exception:
            self.logger.exception("Handler error for %s %s", request.method, request.path)
            self._respond(request, Response(500, "Internal Server Error"))
            return
        if isinstance(result, RelayAction):
            self._task = asyncio.create_task(self._relay(request, result))
        else:
            self._respond(request, result)

    async def _relay(self, request: Request, action: RelayAction) -> None:
        try:
            outcome = await self.relay.send(action.device, action.action)
            response = Response(200, outcome.reply)
            self.logger.info(
                "Client %s keypress %s -> %s (%s)",
                self.client_ip, action.action, action.device.name, action.device.address,
            )
        except GatewayError as e:
            self.logger.warning("Client %s keypress %s failed: %s", self.client_ip, action.action, e.message)
            response = Response.from_error(e)
        except Exception:
            self.logger.exception("Relay error for %s", action.device.name)
            response = Response(500, "Internal Server Error")
        self._respond(request, response)

    def _respond(self, request: Request, response: Response) -> None:
        if response.status >= 500:
            self.logger.warning("Client %s request: %s %s -> %d", self.client_ip, request.method, request.path, response.status)
        else:
            self.logger.debug("Client %s request: %s %s -> %d", self.client_ip, request.method, request.path, response.status)
        self._write(response)

    def _write(self, response: Response) -> None:
        self._responded = True
        self._cancel_timeout()
        if self.transport and not self.transport.is_closing():
            self.transport.write(response.to_bytes())
            self.transport.close()

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self._responded or self._request is not None:
            return
        self.logger.debug("Client %s timed out before sending a request", self.client_ip)
        self._write(Response(408, "Request Timeout"))

    def _cancel_timeout(self) -> None:
        if self._timeout_handle:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def abort(self) -> None:
        """Drop the connection immediately (server shutdown)."""
        self._cancel_timeout()
        if self._task and not self._task.done():
            self._task.cancel()
        if self.transport and not self.transport.is_closing():
            self.transport.abort()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._cancel_timeout()
        if self._task and not self._task.done():
            self._task.cancel()
        self.connections.discard(self)
        self.transport = None


# -----------------------------------------------------------------------------
# Gateway server
# -----------------------------------------------------------------------------

class GatewayServer:
    """
    Runs discovery, then accepts client connections.

    Discovery must finish before the listener starts: the registry is shared
    by all handlers without synchronization. Pass `registry` to skip
    discovery.
    """

    def __init__(
        self,
        config: dict,
        logger: logging.Logger,
        registry: Optional[DeviceRegistry] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.registry = registry
        self.connections: Set[GatewayHandler] = set()
        self._server: Optional[asyncio.Server] = None

    @property
    def port(self) -> Optional[int]:
        """Port actually bound (useful with listen_port 0)."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        if self.registry is None:
            self.registry = await run_discovery(self.config, self.logger)
        for device in self.registry:
            self.logger.info("Device: %s at %s (%s)", device.name, device.address, device.location)
        if not len(self.registry):
            self.logger.warning("No devices found; /devices will be empty")

        static_dir = (self.config.get("static_dir") or "").strip()
        assets = StaticAssets(Path(static_dir) if static_dir else DEFAULT_STATIC_DIR)
        dispatcher = Dispatcher(self.registry, assets, self.logger)
        relay = CommandRelay(
            port=int(self.config.get("ecp_port", ECP_PORT)),
            connect_timeout=float(self.config.get("relay_timeout", 3.0)),
            read_timeout=float(self.config.get("relay_read_timeout", 3.0)),
            logger=self.logger,
        )
        client_timeout = float(self.config.get("client_timeout", 10.0))

        def factory():
            return GatewayHandler(
                dispatcher=dispatcher,
                relay=relay,
                logger=self.logger,
                connections=self.connections,
                client_timeout=client_timeout,
            )

        host = self.config.get("listen_host", "0.0.0.0")
        self._server = await asyncio.get_running_loop().create_server(
            factory,
            host,
            int(self.config.get("listen_port", 8080)),
            reuse_address=True,
        )
        self.logger.info("Gateway listening on http://%s:%d", host, self.port)

    async def stop(self) -> None:
        """Stop listening and drop in-flight connections."""
        if self._server:
            self._server.close()
        for conn in list(self.connections):
            conn.abort()
        if self._server:
            await self._server.wait_closed()
            self._server = None
        self.logger.info("Gateway stopped")


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

async def main_async(config: dict) -> None:
    """Discover devices and run the gateway until SIGINT/SIGTERM."""
    logger = logging.getLogger("roku-remote")
    gateway = GatewayServer(config, logger)

    # Handle shutdown gracefully - must not block event loop or Ctrl-C won't work
    stop_event = asyncio.Event()
    _shutting_down = False

    def shutdown():
        nonlocal _shutting_down
        if _shutting_down:
            logger.warning("Second Ctrl-C: forcing exit")
            os._exit(1)
        _shutting_down = True
        stop_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)
    except (NotImplementedError, OSError):
        # add_signal_handler not supported on Windows - use signal.signal
        try:
            signal.signal(signal.SIGINT, lambda s, f: shutdown())
            signal.signal(signal.SIGTERM, lambda s, f: shutdown())
        except (ValueError, OSError):
            pass

    await gateway.start()
    await stop_event.wait()

    logger.info("Shutting down...")
    try:
        await asyncio.wait_for(gateway.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, exiting anyway")


def main() -> int:
    """Parse arguments and run the gateway."""
    parser = argparse.ArgumentParser(
        description="Roku Remote Gateway - control Roku devices from a browser"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir, if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override log level (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    except (yaml.YAMLError, ValueError) as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1
    if args.log_level:
        config["log_level"] = args.log_level
    setup_logging(config["log_level"])

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        pass
    except (HostAddressUnavailable, UnsupportedAddressFamily) as e:
        logging.getLogger("roku-remote").error("Cannot start discovery: %s", e)
        return 1
    except ValueError as e:
        logging.getLogger("roku-remote").error("Invalid config: %s", e)
        return 1
    except OSError as e:
        logging.getLogger("roku-remote").error("Cannot start gateway: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
