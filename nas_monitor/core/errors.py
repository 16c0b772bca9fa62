"""Error taxonomy for the monitoring engine.

Poll-side failures (``DriverError`` and subclasses) are absorbed into device
health by the poll scheduler and never reach callers of the engine. Only the
query and command entry points raise to their caller (``NotFound`` and
``InvalidRequestError``).
"""

from __future__ import annotations

from typing import Optional


class NasMonitorError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NasMonitorError):
    """Raised when a config file or device feed cannot be used."""


class NotFound(NasMonitorError):
    """Raised when a device or request id is unknown."""


class DeviceNotFoundError(NotFound):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


class RequestNotFoundError(NotFound):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Unknown control request: {request_id}")
        self.request_id = request_id


class InvalidRequestError(NasMonitorError):
    """Raised synchronously from ``submit`` for requests that can never run."""


class DriverError(NasMonitorError):
    """Typed failure of a single device poll."""

    kind = "driver_error"

    def __init__(self, message: str = "", *, device_id: Optional[str] = None) -> None:
        super().__init__(message or self.kind)
        self.device_id = device_id

    @property
    def detail(self) -> str:
        return str(self)


class DriverTimeout(DriverError):
    kind = "timeout"


class AuthFailure(DriverError):
    kind = "auth_failure"


class DeviceUnreachable(DriverError):
    kind = "unreachable"


class ProtocolError(DriverError):
    kind = "protocol_error"


class TransportError(NasMonitorError):
    """Transient transport failure while executing a control action."""


# Machine-readable failure codes carried on control requests.
ERROR_DEVICE_UNREACHABLE = "device_unreachable"
ERROR_REJECTED = "rejected"
ERROR_TIMEOUT = "timeout"
ERROR_TRANSPORT = "transport_error"
ERROR_UNCONFIRMED = "unconfirmed"
ERROR_CANCELLED = "cancelled"

# Warning code, never raised.
STALE_CONFIGURATION = "stale_configuration"


__all__ = [
    "AuthFailure",
    "ConfigurationError",
    "DeviceNotFoundError",
    "DeviceUnreachable",
    "DriverError",
    "DriverTimeout",
    "ERROR_CANCELLED",
    "ERROR_DEVICE_UNREACHABLE",
    "ERROR_REJECTED",
    "ERROR_TIMEOUT",
    "ERROR_TRANSPORT",
    "ERROR_UNCONFIRMED",
    "InvalidRequestError",
    "NasMonitorError",
    "NotFound",
    "ProtocolError",
    "RequestNotFoundError",
    "STALE_CONFIGURATION",
    "TransportError",
]
