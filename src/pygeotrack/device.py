"""Best-effort device metadata attached to location updates.

Battery level and network type are optional capabilities: a probe may
not know either, and a failing probe must never drop a location update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from pygeotrack.models.update import NetworkType

_logger = logging.getLogger(__name__)


class DeviceProbe(Protocol):
    """Structural interface for device metadata lookups."""

    def battery_level(self) -> float | None:
        """Battery charge in percent (0-100), or ``None`` if unknown."""
        ...

    def network_type(self) -> NetworkType | None:
        """Active network transport, or ``None`` if unknown."""
        ...


class NullDeviceProbe:
    """Probe for platforms without battery or network introspection."""

    def battery_level(self) -> float | None:
        return None

    def network_type(self) -> NetworkType | None:
        return None


@dataclass(frozen=True)
class StaticDeviceProbe:
    """Probe returning fixed values, e.g. from a host integration or config."""

    battery: float | None = None
    network: NetworkType | None = None

    def battery_level(self) -> float | None:
        return self.battery

    def network_type(self) -> NetworkType | None:
        return self.network


@dataclass(frozen=True)
class DeviceMetadata:
    battery_level: float | None = None
    network_type: NetworkType | None = None


def read_device_metadata(probe: DeviceProbe) -> DeviceMetadata:
    """Query *probe*, treating any failure or out-of-range value as absent."""
    battery: float | None = None
    network: NetworkType | None = None
    try:
        raw_battery = probe.battery_level()
        if raw_battery is not None and 0.0 <= float(raw_battery) <= 100.0:
            battery = float(raw_battery)
    except Exception:
        _logger.debug("Battery level probe failed", exc_info=True)
    try:
        raw_network = probe.network_type()
        if raw_network is not None:
            network = NetworkType(raw_network)
    except Exception:
        _logger.debug("Network type probe failed", exc_info=True)
    return DeviceMetadata(battery_level=battery, network_type=network)
