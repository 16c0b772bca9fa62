"""Device drivers keyed by the ``driver`` field of a device record."""

from __future__ import annotations

from typing import Callable, Dict, Iterable

from ..core.errors import ConfigurationError
from ..core.protocols import DeviceDriver
from .routeros import RouterOSDriver, RouterOSHTTPError
from .snmp import SnmpDriver

DRIVER_FACTORIES: Dict[str, Callable[[], DeviceDriver]] = {
    "routeros": RouterOSDriver,
    "snmp": SnmpDriver,
}


def build_drivers(names: Iterable[str]) -> Dict[str, DeviceDriver]:
    """Instantiate one driver per distinct name.

    Raises:
        ConfigurationError: If a name has no registered driver.
    """
    drivers: Dict[str, DeviceDriver] = {}
    for name in names:
        if name in drivers:
            continue
        factory = DRIVER_FACTORIES.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown device driver: {name}")
        drivers[name] = factory()
    return drivers


__all__ = [
    "DRIVER_FACTORIES",
    "RouterOSDriver",
    "RouterOSHTTPError",
    "SnmpDriver",
    "build_drivers",
]
