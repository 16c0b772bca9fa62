"""Protocol definitions for device drivers, configuration sources and listeners."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, runtime_checkable

from .models import ActionResult, ControlRequest, Device, PollResult

if TYPE_CHECKING:
    from ..adapters.feed import DeviceFeed


# Event subscribers may be plain callables or coroutine functions.
EventListener = Callable[[Any], Awaitable[None] | None]


@runtime_checkable
class DeviceDriver(Protocol):
    """Contract for transports that talk to a network access server.

    Drivers never retry internally; retry policy belongs to the poll
    scheduler and the access controller.
    """

    async def poll(self, device: Device, timeout: float) -> PollResult:
        """Collect health and counters from one device.

        Raises:
            DriverError: ``DriverTimeout``, ``AuthFailure``, ``DeviceUnreachable``
                or ``ProtocolError``.
        """
        ...

    async def execute(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> ActionResult:
        """Apply a control action to a client session.

        Implementations check the device-side state first and report an
        already-applied action as success instead of issuing it again.

        Raises:
            TransportError: For transient transport failures worth retrying.
        """
        ...

    async def confirm(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> bool:
        """Read back device state and report whether the action took effect."""
        ...

    async def aclose(self) -> None:
        """Close any underlying resources."""
        ...


@runtime_checkable
class DeviceSource(Protocol):
    """External configuration store supplying device and session records."""

    async def fetch(self) -> "DeviceFeed":
        """Return the current feed.

        Raises:
            ConfigurationError: If the feed cannot be read or parsed.
        """
        ...
