"""Append-only event log for health transitions and control outcomes.

Two kinds of events are recorded:

- ``HealthTransition``: a device's confirmed health state changed.
- ``ActionOutcome``: a control request reached a terminal state.

Events are immutable. The log assigns each one a monotonically increasing
sequence number on append, keeps a bounded in-memory window for queries,
optionally mirrors every event to a JSON-lines audit file, and notifies
subscribers (dashboards, MQTT publisher, billing hooks).
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .core.models import ControlAction, HealthState, isoformat, utcnow
from .core.protocols import EventListener

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    HEALTH_TRANSITION = "healthTransition"
    ACTION_OUTCOME = "actionOutcome"


class EventSeverity(str, Enum):
    """Event severity levels for dashboard display."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_TRANSITION_SEVERITY: Dict[HealthState, EventSeverity] = {
    HealthState.ONLINE: EventSeverity.INFO,
    HealthState.DEGRADED: EventSeverity.WARNING,
    HealthState.OFFLINE: EventSeverity.ERROR,
    HealthState.UNKNOWN: EventSeverity.INFO,
}


def generate_event_id() -> str:
    """Generate a time-ordered event ID where the runtime supports UUID v7."""
    try:
        return str(uuid.uuid7())  # type: ignore[attr-defined]
    except AttributeError:
        return str(uuid.uuid4())


@dataclass(frozen=True)
class HealthTransition:
    """A committed change of a device's health state."""

    device_id: str
    old_state: HealthState
    new_state: HealthState
    occurred_at: datetime = field(default_factory=utcnow)
    reason: Optional[str] = None
    event_id: str = field(default_factory=generate_event_id)
    sequence: int = 0

    kind = EventKind.HEALTH_TRANSITION

    @property
    def severity(self) -> EventSeverity:
        return _TRANSITION_SEVERITY[self.new_state]

    @property
    def client_id(self) -> Optional[str]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "sequence": self.sequence,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "deviceId": self.device_id,
            "oldState": self.old_state.value,
            "newState": self.new_state.value,
            "occurredAtUtc": isoformat(self.occurred_at),
        }
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass(frozen=True)
class ActionOutcome:
    """Terminal result of a control request."""

    request_id: str
    device_id: str
    action: ControlAction
    success: bool
    attempt: int
    client_id: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    warnings: tuple[str, ...] = ()
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=generate_event_id)
    sequence: int = 0

    kind = EventKind.ACTION_OUTCOME

    @property
    def severity(self) -> EventSeverity:
        return EventSeverity.INFO if self.success else EventSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "sequence": self.sequence,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "deviceId": self.device_id,
            "requestId": self.request_id,
            "clientId": self.client_id,
            "action": self.action.value,
            "success": self.success,
            "attempt": self.attempt,
            "occurredAtUtc": isoformat(self.occurred_at),
        }
        if self.error_code:
            result["errorCode"] = self.error_code
        if self.error:
            result["error"] = self.error
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


Event = Union[HealthTransition, ActionOutcome]


class EventLog:
    """Append-only, bounded, queryable record of engine events."""

    def __init__(
        self,
        *,
        retention: int = 10000,
        path: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Args:
            retention: Number of most recent events kept in memory for queries.
            path: Optional JSON-lines file receiving every appended event.
            clock: Source of the current UTC time (for history queries).
        """
        self._events: Deque[Event] = deque(maxlen=max(1, retention))
        self._sequence = 0
        self._path = path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: List[EventListener] = []
        self._pending: set[asyncio.Task[None]] = set()

        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def __len__(self) -> int:
        return len(self._events)

    def subscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            raise ValueError("Listener already registered")
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def append(self, event: Event) -> Event:
        """Record an event, returning the stored copy with its sequence number."""
        self._sequence += 1
        stored = dataclasses.replace(event, sequence=self._sequence)
        self._events.append(stored)

        if self._path is not None:
            try:
                with self._path.open("a", encoding="utf-8") as stream:
                    stream.write(json.dumps(stored.to_dict()) + "\n")
            except OSError as exc:
                LOGGER.error("Failed to write event to %s: %s", self._path, exc)

        LOGGER.debug("Recorded event #%d: %s", stored.sequence, stored.kind.value)
        self._notify(stored)
        return stored

    def events(
        self,
        *,
        since: int = 0,
        device_id: Optional[str] = None,
        client_id: Optional[str] = None,
        kind: Optional[EventKind] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Return retained events with ``sequence > since`` in append order."""
        selected = [
            event
            for event in self._events
            if event.sequence > since
            and (device_id is None or event.device_id == device_id)
            and (client_id is None or event.client_id == client_id)
            and (kind is None or event.kind == kind)
        ]
        if limit is not None and limit >= 0:
            selected = selected[:limit]
        return selected

    def client_history(self, client_id: str, hours: float = 24) -> List[Event]:
        """Control outcomes for one client within the last ``hours``, newest first."""
        cutoff = self._clock() - timedelta(hours=hours)
        history = [
            event
            for event in self._events
            if event.client_id == client_id and event.occurred_at >= cutoff
        ]
        history.reverse()
        return history

    async def drain(self) -> None:
        """Wait for pending async listener deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _notify(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                LOGGER.exception("Event listener raised an exception")
                continue

            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: "asyncio.Future[None]") -> None:
        self._pending.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Async event listener failed: %s", exc)
