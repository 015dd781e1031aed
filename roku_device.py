"""
Roku device model and the in-memory device registry.

RokuDevice is what discovery produces; DeviceRegistry is the read-only view
shared by every request handler once discovery has finished.
"""

from __future__ import annotations

import logging
from ipaddress import IPv4Address
from typing import Iterable, Iterator, NamedTuple, Optional

_logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Device
# -----------------------------------------------------------------------------


class RokuDevice(NamedTuple):
    """A Roku found on the LAN. Identity is `name`."""

    name: str
    address: IPv4Address
    location: str


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class DeviceRegistry:
    """
    Ordered collection of discovered devices, ascending by address.

    Built once after discovery and never mutated, so handlers read it without
    locking. Device names are assumed unique on a LAN; when they are not, the
    first device (lowest address) shadows the rest for lookups.
    """

    def __init__(self, devices: Iterable[RokuDevice] = ()) -> None:
        self._devices: tuple[RokuDevice, ...] = tuple(
            sorted(devices, key=lambda d: d.address)
        )
        self._by_name: dict[str, RokuDevice] = {}
        for device in self._devices:
            if device.name in self._by_name:
                _logger.warning(
                    "Duplicate device name '%s' at %s; %s will receive commands",
                    device.name, device.address, self._by_name[device.name].address,
                )
                continue
            self._by_name[device.name] = device

    def __iter__(self) -> Iterator[RokuDevice]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __repr__(self) -> str:
        return f"DeviceRegistry({list(self._devices)!r})"

    def names(self) -> list[str]:
        """Device names in registry order (duplicates included)."""
        return [d.name for d in self._devices]

    def find(self, name: str) -> Optional[RokuDevice]:
        """Return the device with this name, or None."""
        return self._by_name.get(name)
