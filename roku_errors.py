"""
Error types for roku-remote.

Discovery errors are recovered per candidate (the candidate is skipped).
Gateway errors carry the HTTP status the client receives.
"""

from __future__ import annotations


class RokuRemoteError(Exception):
    """Base exception for roku-remote."""


# -----------------------------------------------------------------------------
# Startup / discovery
# -----------------------------------------------------------------------------


class HostAddressUnavailable(RokuRemoteError):
    """The host's own local address could not be determined."""


class UnsupportedAddressFamily(RokuRemoteError):
    """The host address is not IPv4; the scanner only handles IPv4 /24 ranges."""


class ProbeError(RokuRemoteError):
    """A candidate address did not answer the device-info probe."""


class ProbeTimeout(ProbeError):
    pass


class ProbeRefused(ProbeError):
    pass


class MalformedDeviceResponse(RokuRemoteError):
    """A device answered, but not with a usable device-info response."""


# -----------------------------------------------------------------------------
# Gateway (per request)
# -----------------------------------------------------------------------------


class GatewayError(RokuRemoteError):
    """Request-level failure, rendered as an HTTP response with `status`."""

    status = 500

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class MalformedRequest(GatewayError):
    status = 400


class MalformedParameter(GatewayError):
    status = 400

    def __init__(self, pair: str) -> None:
        super().__init__(f"Malformed parameter: {pair}")
        self.pair = pair


class MissingParameter(GatewayError):
    status = 400

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing parameter: {name}")
        self.name = name


class DeviceNotFound(GatewayError):
    # 400 rather than 404: the resource is /keypress, not the device
    status = 400

    def __init__(self, name: str) -> None:
        super().__init__(f"Device not found: {name}")
        self.name = name


class PathTraversalRejected(GatewayError):
    status = 400


class AssetNotFound(GatewayError):
    status = 404


class DeviceUnreachable(GatewayError):
    status = 503
