"""Interface and session counter aggregation.

Successive counter samples for the same device+interface (or client session)
are turned into bit rates and link utilization:

    rate = Δbytes * 8 / Δseconds
    utilization = max(rate_in, rate_out) / link_speed

A counter that goes backwards is treated as a wrap modulo ``2**counter_bits``
when the implied rate is plausible (at most ``implausible_rate_factor`` times
the link speed). Otherwise the sample is kept only as the new baseline and
yields no rate. Session counters have no link speed and restart on every
reconnect, so a backwards session counter always re-baselines.

Fleet rollups (top devices and top clients by throughput) are recomputed by
``rollup()`` on each aggregation pass, not on every sample.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .core.models import InterfaceSample, SessionSample, isoformat, utcnow

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class InterfaceRate:
    device_id: str
    if_index: int
    name: Optional[str]
    rate_in_bps: float
    rate_out_bps: float
    utilization: Optional[float]
    computed_at: datetime

    @property
    def total_bps(self) -> float:
        return self.rate_in_bps + self.rate_out_bps

    def as_dict(self) -> Dict[str, object]:
        return {
            "ifIndex": self.if_index,
            "name": self.name,
            "rateInBps": round(self.rate_in_bps, 2),
            "rateOutBps": round(self.rate_out_bps, 2),
            "utilization": (
                round(self.utilization, 4) if self.utilization is not None else None
            ),
            "computedAt": isoformat(self.computed_at),
        }


@dataclass(slots=True, frozen=True)
class SessionRate:
    device_id: str
    session_id: str
    rate_in_bps: float
    rate_out_bps: float
    computed_at: datetime

    @property
    def total_bps(self) -> float:
        return self.rate_in_bps + self.rate_out_bps


@dataclass(slots=True, frozen=True)
class UsageEntry:
    key: str
    device_id: str
    total_bps: float

    def as_dict(self) -> Dict[str, object]:
        return {"id": self.key, "deviceId": self.device_id, "totalBps": round(self.total_bps, 2)}


@dataclass(slots=True, frozen=True)
class FleetRollup:
    computed_at: Optional[datetime] = None
    top_devices: Tuple[UsageEntry, ...] = ()
    top_clients: Tuple[UsageEntry, ...] = ()
    total_bps: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        return {
            "computedAt": isoformat(self.computed_at),
            "totalBps": round(self.total_bps, 2),
            "topDevices": [entry.as_dict() for entry in self.top_devices],
            "topClients": [entry.as_dict() for entry in self.top_clients],
        }


@dataclass(slots=True)
class _SeriesState:
    history: Deque[InterfaceSample | SessionSample]
    rate: Optional[InterfaceRate | SessionRate] = None
    discarded: int = 0


@dataclass(slots=True)
class DeviceMetrics:
    device_id: str
    interfaces: List[InterfaceRate] = field(default_factory=list)
    sessions: List[SessionRate] = field(default_factory=list)

    @property
    def total_bps(self) -> float:
        return sum(rate.total_bps for rate in self.interfaces)

    def as_dict(self) -> Dict[str, object]:
        return {
            "deviceId": self.device_id,
            "totalBps": round(self.total_bps, 2),
            "interfaces": [rate.as_dict() for rate in self.interfaces],
            "sessions": [
                {
                    "sessionId": rate.session_id,
                    "rateInBps": round(rate.rate_in_bps, 2),
                    "rateOutBps": round(rate.rate_out_bps, 2),
                }
                for rate in self.sessions
            ],
        }


def counter_delta(previous: int, current: int, counter_bits: int) -> Tuple[int, bool]:
    """Return ``(delta, wrapped)`` between two readings of a wrapping counter."""
    if current >= previous:
        return current - previous, False
    return (current - previous) % (1 << counter_bits), True


class MetricsAggregator:
    """Keeps the latest samples per series and derives rates from them."""

    def __init__(
        self,
        *,
        history_size: int = 10,
        top_n: int = 5,
        implausible_rate_factor: float = 2.0,
        clock: Optional[Callable[[], datetime]] = None,
        client_resolver: Optional[Callable[[str, str], Optional[str]]] = None,
    ) -> None:
        """
        Args:
            history_size: Samples kept per series for rate computation.
            top_n: Length of the top-devices and top-clients rollups.
            implausible_rate_factor: A wrapped counter implying a rate above
                this multiple of link speed is discarded.
            client_resolver: Maps ``(device_id, session_id)`` to a client id
                for the top-clients rollup. Unmapped sessions are reported
                under their session id.
        """
        self._history_size = max(2, history_size)
        self._top_n = max(1, top_n)
        self._implausible_factor = implausible_rate_factor
        self._clock = clock or utcnow
        self._client_resolver = client_resolver
        self._interfaces: Dict[Tuple[str, int], _SeriesState] = {}
        self._sessions: Dict[Tuple[str, str], _SeriesState] = {}
        self._rollup = FleetRollup()

    @property
    def last_rollup(self) -> FleetRollup:
        return self._rollup

    def record_interfaces(
        self, samples: Iterable[InterfaceSample]
    ) -> List[InterfaceRate]:
        """Ingest interface samples in arrival order; returns the new rates."""
        rates: List[InterfaceRate] = []
        for sample in samples:
            key = (sample.device_id, sample.if_index)
            state = self._interfaces.get(key)
            if state is None:
                state = _SeriesState(history=deque(maxlen=self._history_size))
                self._interfaces[key] = state

            previous = state.history[-1] if state.history else None
            state.history.append(sample)
            if not isinstance(previous, InterfaceSample):
                continue

            rate = self._interface_rate(previous, sample)
            if rate is None:
                state.discarded += 1
                state.rate = None
                continue
            state.rate = rate
            rates.append(rate)
        return rates

    def record_sessions(self, samples: Iterable[SessionSample]) -> List[SessionRate]:
        rates: List[SessionRate] = []
        for sample in samples:
            key = (sample.device_id, sample.session_id)
            state = self._sessions.get(key)
            if state is None:
                state = _SeriesState(history=deque(maxlen=self._history_size))
                self._sessions[key] = state

            previous = state.history[-1] if state.history else None
            state.history.append(sample)
            if not isinstance(previous, SessionSample):
                continue

            elapsed = (sample.sampled_at - previous.sampled_at).total_seconds()
            if (
                elapsed <= 0
                or sample.bytes_in < previous.bytes_in
                or sample.bytes_out < previous.bytes_out
            ):
                # Session restarted; this sample becomes the new baseline.
                state.rate = None
                continue

            rate = SessionRate(
                device_id=sample.device_id,
                session_id=sample.session_id,
                rate_in_bps=(sample.bytes_in - previous.bytes_in) * 8 / elapsed,
                rate_out_bps=(sample.bytes_out - previous.bytes_out) * 8 / elapsed,
                computed_at=sample.sampled_at,
            )
            state.rate = rate
            rates.append(rate)
        return rates

    def retain_sessions(self, device_id: str, active: Iterable[str]) -> None:
        """Forget session series on ``device_id`` that are no longer active."""
        keep = set(active)
        for key in [k for k in self._sessions if k[0] == device_id and k[1] not in keep]:
            del self._sessions[key]

    def clear_rates(self, device_id: str) -> None:
        """Drop the current rates of an unreachable device.

        Interface history is kept so counters resume once the device answers
        again; session series are dropped since its sessions are gone.
        """
        for (dev, _), state in self._interfaces.items():
            if dev == device_id:
                state.rate = None
        for key in [k for k in self._sessions if k[0] == device_id]:
            del self._sessions[key]

    def forget_device(self, device_id: str) -> None:
        for key in [k for k in self._interfaces if k[0] == device_id]:
            del self._interfaces[key]
        for key in [k for k in self._sessions if k[0] == device_id]:
            del self._sessions[key]

    def latest_samples(self, device_id: str) -> List[InterfaceSample]:
        samples = []
        for (dev, _), state in sorted(self._interfaces.items()):
            if dev == device_id and state.history:
                last = state.history[-1]
                if isinstance(last, InterfaceSample):
                    samples.append(last)
        return samples

    def device_metrics(self, device_id: str) -> DeviceMetrics:
        metrics = DeviceMetrics(device_id=device_id)
        for (dev, _), state in sorted(self._interfaces.items()):
            if dev == device_id and isinstance(state.rate, InterfaceRate):
                metrics.interfaces.append(state.rate)
        for (dev, _), state in sorted(self._sessions.items()):
            if dev == device_id and isinstance(state.rate, SessionRate):
                metrics.sessions.append(state.rate)
        return metrics

    def rollup(self) -> FleetRollup:
        """Recompute fleet-level top-N views from the current rates."""
        per_device: Dict[str, float] = {}
        for (device_id, _), state in self._interfaces.items():
            if isinstance(state.rate, InterfaceRate):
                per_device[device_id] = per_device.get(device_id, 0.0) + state.rate.total_bps

        per_client: Dict[str, UsageEntry] = {}
        for (device_id, session_id), state in self._sessions.items():
            if not isinstance(state.rate, SessionRate):
                continue
            client_id = session_id
            if self._client_resolver is not None:
                client_id = self._client_resolver(device_id, session_id) or session_id
            existing = per_client.get(client_id)
            total = state.rate.total_bps + (existing.total_bps if existing else 0.0)
            per_client[client_id] = UsageEntry(client_id, device_id, total)

        top_devices = sorted(
            (UsageEntry(device_id, device_id, total) for device_id, total in per_device.items()),
            key=lambda entry: (-entry.total_bps, entry.key),
        )[: self._top_n]
        top_clients = sorted(
            per_client.values(), key=lambda entry: (-entry.total_bps, entry.key)
        )[: self._top_n]

        self._rollup = FleetRollup(
            computed_at=self._clock(),
            top_devices=tuple(top_devices),
            top_clients=tuple(top_clients),
            total_bps=sum(per_device.values()),
        )
        return self._rollup

    def _interface_rate(
        self, previous: InterfaceSample, current: InterfaceSample
    ) -> Optional[InterfaceRate]:
        elapsed = (current.sampled_at - previous.sampled_at).total_seconds()
        if elapsed <= 0:
            LOGGER.debug(
                "Discarding out-of-order sample for %s/if%d",
                current.device_id,
                current.if_index,
            )
            return None

        bits = current.counter_bits or 64
        delta_in, wrapped_in = counter_delta(previous.bytes_in, current.bytes_in, bits)
        delta_out, wrapped_out = counter_delta(previous.bytes_out, current.bytes_out, bits)
        rate_in = delta_in * 8 / elapsed
        rate_out = delta_out * 8 / elapsed

        speed = current.link_speed_bps
        if wrapped_in or wrapped_out:
            # Without a link speed a wrap cannot be told apart from a reset.
            limit = speed * self._implausible_factor
            if speed <= 0 or max(rate_in, rate_out) > limit:
                LOGGER.info(
                    "Discarding implausible counter sample for %s/if%d "
                    "(in=%.0fbps out=%.0fbps speed=%dbps)",
                    current.device_id,
                    current.if_index,
                    rate_in,
                    rate_out,
                    speed,
                )
                return None

        utilization = max(rate_in, rate_out) / speed if speed > 0 else None
        return InterfaceRate(
            device_id=current.device_id,
            if_index=current.if_index,
            name=current.name,
            rate_in_bps=rate_in,
            rate_out_bps=rate_out,
            utilization=utilization,
            computed_at=current.sampled_at,
        )
