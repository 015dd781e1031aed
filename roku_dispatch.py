"""
Request routing for the gateway.

Handlers take (request, registry) and return either a Response to write
directly or a RelayAction that the gateway carries out against a device.
GatewayErrors raised by a handler become error responses here.
"""

from __future__ import annotations

import logging
from typing import Callable, NamedTuple, Optional, Union

from roku_device import DeviceRegistry, RokuDevice
from roku_errors import (
    DeviceNotFound,
    GatewayError,
    MissingParameter,
    PathTraversalRejected,
)
from roku_http import Request, Response, parse_form
from static_assets import StaticAssets


class RelayAction(NamedTuple):
    """A key press the gateway must forward to `device`."""

    device: RokuDevice
    action: str


HandlerResult = Union[Response, RelayAction]
Handler = Callable[[Request, DeviceRegistry], HandlerResult]


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

def devices_handler(request: Request, registry: DeviceRegistry) -> HandlerResult:
    """GET /devices - comma-joined device names in registry order."""
    return Response(200, ",".join(registry.names()))


def keypress_handler(request: Request, registry: DeviceRegistry) -> HandlerResult:
    """PUT /keypress - body `device=<name>&action=<token>`."""
    params = parse_form(request.body)
    for required in ("device", "action"):
        if required not in params:
            raise MissingParameter(required)
    device = registry.find(params["device"])
    if device is None:
        raise DeviceNotFound(params["device"])
    return RelayAction(device, params["action"])


def not_found_handler(request: Request, registry: DeviceRegistry) -> HandlerResult:
    return Response(404, f"No route for {request.method} {request.path}")


def static_handler(assets: StaticAssets) -> Handler:
    """GET handler serving files from `assets`."""

    def handler(request: Request, registry: DeviceRegistry) -> HandlerResult:
        if ".." in request.path:
            raise PathTraversalRejected(f"Parent directory segment in path: {request.path}")
        body, content_type = assets.load(request.path)
        return Response(200, body, content_type=content_type)

    return handler


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------

class Dispatcher:
    """Routes (method, path) to a handler and runs it against the registry."""

    def __init__(
        self,
        registry: DeviceRegistry,
        assets: StaticAssets,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.registry = registry
        self.assets = assets
        self.logger = logger or logging.getLogger(__name__)
        self._static = static_handler(assets)

    def route(self, method: str, path: str) -> Handler:
        if method == "PUT" and path == "/keypress":
            return keypress_handler
        if method == "GET":
            if path == "/devices":
                return devices_handler
            return self._static
        return not_found_handler

    def dispatch(self, request: Request) -> HandlerResult:
        handler = self.route(request.method, request.path)
        try:
            return handler(request, self.registry)
        except GatewayError as e:
            self.logger.debug("%s %s -> %d: %s", request.method, request.path, e.status, e.message)
            return Response.from_error(e)
