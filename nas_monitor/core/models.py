"""Domain models for device monitoring and client access control."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


class ControlAction(str, Enum):
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    SPEED_LIMIT = "speed_limit"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"


class RequestState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.SUCCEEDED, RequestState.FAILED)


class ActionStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


@dataclass(slots=True, frozen=True)
class Credentials:
    username: Optional[str] = None
    password: Optional[str] = None
    community: Optional[str] = None


@dataclass(slots=True, frozen=True)
class Device:
    """A network access server as defined by the configuration feed."""

    id: str
    address: str
    credentials: Credentials = field(default_factory=Credentials)
    capabilities: FrozenSet[ControlAction] = frozenset()
    poll_interval_seconds: float = 30.0
    timeout_seconds: float = 5.0
    name: Optional[str] = None
    driver: str = "routeros"
    port: Optional[int] = None
    use_tls: bool = True

    def supports(self, action: ControlAction) -> bool:
        return action in self.capabilities

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "address": self.address,
            "driver": self.driver,
            "capabilities": sorted(action.value for action in self.capabilities),
            "pollIntervalSeconds": self.poll_interval_seconds,
            "timeoutSeconds": self.timeout_seconds,
        }


@dataclass(slots=True, frozen=True)
class HealthSample:
    device_id: str
    sampled_at: datetime = field(default_factory=utcnow)
    reachable: bool = True
    uptime_seconds: Optional[int] = None
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    response_time_ms: Optional[float] = None
    system_name: Optional[str] = None


@dataclass(slots=True, frozen=True)
class InterfaceSample:
    """Counter snapshot for a single interface. Never mutated once recorded."""

    device_id: str
    if_index: int
    oper_up: bool
    bytes_in: int
    bytes_out: int
    link_speed_bps: int
    sampled_at: datetime = field(default_factory=utcnow)
    name: Optional[str] = None
    admin_up: bool = True
    counter_bits: int = 64


@dataclass(slots=True, frozen=True)
class SessionSample:
    """Live client session counters observed on a device."""

    device_id: str
    session_id: str
    bytes_in: int
    bytes_out: int
    sampled_at: datetime = field(default_factory=utcnow)
    address: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PollResult:
    health: HealthSample
    interfaces: Tuple[InterfaceSample, ...] = ()
    sessions: Tuple[SessionSample, ...] = ()


@dataclass(slots=True, frozen=True)
class ActionResult:
    status: ActionStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls, reason: Optional[str] = None) -> "ActionResult":
        return cls(ActionStatus.SUCCESS, reason)

    @classmethod
    def rejected(cls, reason: str) -> "ActionResult":
        return cls(ActionStatus.REJECTED, reason)

    @classmethod
    def timeout(cls, reason: Optional[str] = None) -> "ActionResult":
        return cls(ActionStatus.TIMEOUT, reason)


@dataclass(slots=True, frozen=True)
class ErrorDetail:
    kind: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(slots=True)
class DeviceHealth:
    """Health record for one device.

    Mutated only by the health state machine owned by that device's poller;
    everybody else reads copies returned by ``snapshot()``.
    """

    device_id: str
    state: HealthState = HealthState.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    consecutive_healthy: int = 0
    last_transition_at: Optional[datetime] = None
    last_poll_at: Optional[datetime] = None
    last_error: Optional[ErrorDetail] = None
    anomalies: Tuple[str, ...] = ()

    def snapshot(self) -> "DeviceHealth":
        return DeviceHealth(
            device_id=self.device_id,
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            consecutive_healthy=self.consecutive_healthy,
            last_transition_at=self.last_transition_at,
            last_poll_at=self.last_poll_at,
            last_error=self.last_error,
            anomalies=self.anomalies,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "state": self.state.value,
            "consecutiveFailures": self.consecutive_failures,
            "consecutiveSuccesses": self.consecutive_successes,
            "lastTransitionAt": isoformat(self.last_transition_at),
            "lastPollAt": isoformat(self.last_poll_at),
            "lastError": self.last_error.as_dict() if self.last_error else None,
            "anomalies": list(self.anomalies),
        }


@dataclass(slots=True)
class ControlRequest:
    """A disconnect/reconnect/speed-limit request against a client session.

    Mutated only by the access controller task handling the request.
    """

    request_id: str
    client_id: str
    device_id: str
    action: ControlAction
    idempotency_key: str
    session_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    force: bool = False
    state: RequestState = RequestState.PENDING
    attempts: int = 0
    error_code: Optional[str] = None
    error: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def target_session(self) -> str:
        return self.session_id or self.client_id

    def snapshot(self) -> "ControlRequest":
        return ControlRequest(
            request_id=self.request_id,
            client_id=self.client_id,
            device_id=self.device_id,
            action=self.action,
            idempotency_key=self.idempotency_key,
            session_id=self.session_id,
            payload=dict(self.payload),
            force=self.force,
            state=self.state,
            attempts=self.attempts,
            error_code=self.error_code,
            error=self.error,
            warnings=self.warnings,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "clientId": self.client_id,
            "deviceId": self.device_id,
            "sessionId": self.session_id,
            "action": self.action.value,
            "payload": dict(self.payload),
            "idempotencyKey": self.idempotency_key,
            "force": self.force,
            "state": self.state.value,
            "attempts": self.attempts,
            "errorCode": self.error_code,
            "error": self.error,
            "warnings": list(self.warnings),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
