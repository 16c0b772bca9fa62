"""Per-device health state machine with hysteresis.

States: ``unknown`` (no confirmed sample yet), ``online``, ``offline`` and
``degraded``. Every poll outcome is classified as one of three observations:

- ``failed``: the poll raised a driver error (unreachable, auth failure,
  timeout, protocol error).
- ``anomalous``: the device answered but the degradation policy flagged it.
- ``healthy``: the device answered and nothing was flagged.

Transition rules (K = ``confirm_samples``):

- to ``offline``: K consecutive failed observations.
- to ``online``: K consecutive reachable observations from ``unknown`` or
  ``offline`` (``degraded`` instead if the confirming sample is anomalous),
  or K consecutive healthy observations from ``degraded``.
- ``online`` -> ``degraded``: a single anomalous observation.

A transition is committed, and exactly one ``HealthTransition`` returned, on
the observation that completes the confirmation run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .config import HealthConfig
from .core.errors import DriverError
from .core.models import (
    DeviceHealth,
    ErrorDetail,
    HealthSample,
    HealthState,
    InterfaceSample,
    utcnow,
)
from .events import HealthTransition

LOGGER = logging.getLogger(__name__)


class Observation(str, Enum):
    HEALTHY = "healthy"
    ANOMALOUS = "anomalous"
    FAILED = "failed"


@dataclass(slots=True)
class DegradationPolicy:
    """Thresholds deciding when a reachable device counts as degraded.

    A threshold of ``None`` disables that check.
    """

    cpu_percent: Optional[float] = 90.0
    memory_percent: Optional[float] = 95.0
    interface_down: bool = True

    @classmethod
    def from_config(cls, config: HealthConfig) -> "DegradationPolicy":
        return cls(
            cpu_percent=config.cpu_degraded_percent,
            memory_percent=config.memory_degraded_percent,
            interface_down=config.interface_down_degrades,
        )

    def anomalies(
        self, sample: HealthSample, interfaces: Sequence[InterfaceSample] = ()
    ) -> List[str]:
        found: List[str] = []
        if (
            self.cpu_percent is not None
            and sample.cpu_percent is not None
            and sample.cpu_percent >= self.cpu_percent
        ):
            found.append(f"cpu {sample.cpu_percent:.0f}% >= {self.cpu_percent:.0f}%")
        if (
            self.memory_percent is not None
            and sample.memory_percent is not None
            and sample.memory_percent >= self.memory_percent
        ):
            found.append(
                f"memory {sample.memory_percent:.0f}% >= {self.memory_percent:.0f}%"
            )
        if self.interface_down:
            for interface in interfaces:
                if interface.admin_up and not interface.oper_up:
                    label = interface.name or f"if{interface.if_index}"
                    found.append(f"interface {label} down")
        return found


class HealthStateMachine:
    """Owns the ``DeviceHealth`` record of exactly one device."""

    def __init__(
        self,
        device_id: str,
        *,
        confirm_samples: int = 2,
        policy: Optional[DegradationPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._k = max(1, confirm_samples)
        self._policy = policy or DegradationPolicy()
        self._clock = clock or utcnow
        self._health = DeviceHealth(device_id=device_id)

    @property
    def device_id(self) -> str:
        return self._health.device_id

    @property
    def state(self) -> HealthState:
        return self._health.state

    def snapshot(self) -> DeviceHealth:
        return self._health.snapshot()

    def observe_success(
        self, sample: HealthSample, interfaces: Sequence[InterfaceSample] = ()
    ) -> Optional[HealthTransition]:
        """Feed a successful poll; returns the committed transition, if any."""
        health = self._health
        anomalies = self._policy.anomalies(sample, interfaces)
        observation = Observation.ANOMALOUS if anomalies else Observation.HEALTHY

        health.last_poll_at = self._clock()
        health.consecutive_failures = 0
        health.consecutive_successes += 1
        if observation is Observation.HEALTHY:
            health.consecutive_healthy += 1
        else:
            health.consecutive_healthy = 0
        health.anomalies = tuple(anomalies)

        return self._evaluate(observation)

    def observe_failure(self, error: DriverError) -> Optional[HealthTransition]:
        """Feed a failed poll; returns the committed transition, if any."""
        health = self._health
        health.last_poll_at = self._clock()
        health.last_error = ErrorDetail(kind=error.kind, message=error.detail)
        health.consecutive_failures += 1
        health.consecutive_successes = 0
        health.consecutive_healthy = 0

        return self._evaluate(Observation.FAILED)

    def _evaluate(self, observation: Observation) -> Optional[HealthTransition]:
        health = self._health
        current = health.state
        k = self._k

        target: Optional[HealthState] = None
        if observation is Observation.FAILED:
            if current is not HealthState.OFFLINE and health.consecutive_failures == k:
                target = HealthState.OFFLINE
        elif current in (HealthState.UNKNOWN, HealthState.OFFLINE):
            if health.consecutive_successes == k:
                target = (
                    HealthState.DEGRADED
                    if observation is Observation.ANOMALOUS
                    else HealthState.ONLINE
                )
        elif current is HealthState.ONLINE:
            if observation is Observation.ANOMALOUS:
                target = HealthState.DEGRADED
        elif current is HealthState.DEGRADED:
            if health.consecutive_healthy == k:
                target = HealthState.ONLINE

        if target is None or target is current:
            return None
        return self._commit(current, target)

    def _commit(self, old: HealthState, new: HealthState) -> HealthTransition:
        health = self._health
        now = self._clock()
        health.state = new
        health.last_transition_at = now
        if new is not HealthState.OFFLINE:
            health.last_error = None

        reason: Optional[str]
        if new is HealthState.OFFLINE:
            reason = health.last_error.kind if health.last_error else None
        elif new is HealthState.DEGRADED:
            reason = "; ".join(health.anomalies) or None
        else:
            reason = None

        log = LOGGER.warning if new is HealthState.OFFLINE else LOGGER.info
        log(
            "Device %s health %s -> %s%s",
            health.device_id,
            old.value,
            new.value,
            f" ({reason})" if reason else "",
        )
        return HealthTransition(
            device_id=health.device_id,
            old_state=old,
            new_state=new,
            occurred_at=now,
            reason=reason,
        )
