"""Core primitives for nas-monitor."""

from .errors import (
    AuthFailure,
    ConfigurationError,
    DeviceNotFoundError,
    DeviceUnreachable,
    DriverError,
    DriverTimeout,
    InvalidRequestError,
    NasMonitorError,
    NotFound,
    ProtocolError,
    RequestNotFoundError,
    TransportError,
)
from .idempotency import IdempotencyIndex
from .models import (
    ActionResult,
    ActionStatus,
    ControlAction,
    ControlRequest,
    Credentials,
    Device,
    DeviceHealth,
    ErrorDetail,
    HealthSample,
    HealthState,
    InterfaceSample,
    PollResult,
    RequestState,
    SessionSample,
)
from .protocols import DeviceDriver, DeviceSource, EventListener
from .utils import format_rate, parse_rate

__all__ = [
    "ActionResult",
    "ActionStatus",
    "AuthFailure",
    "ConfigurationError",
    "ControlAction",
    "ControlRequest",
    "Credentials",
    "Device",
    "DeviceDriver",
    "DeviceHealth",
    "DeviceNotFoundError",
    "DeviceSource",
    "DeviceUnreachable",
    "DriverError",
    "DriverTimeout",
    "ErrorDetail",
    "EventListener",
    "HealthSample",
    "HealthState",
    "IdempotencyIndex",
    "InterfaceSample",
    "InvalidRequestError",
    "NasMonitorError",
    "NotFound",
    "PollResult",
    "ProtocolError",
    "RequestNotFoundError",
    "RequestState",
    "SessionSample",
    "TransportError",
    "format_rate",
    "parse_rate",
]
