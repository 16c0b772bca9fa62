"""Monitoring engine: wires registry, polling, health, metrics and control."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .access import AccessController
from .config import EngineConfig
from .core.models import (
    ControlAction,
    ControlRequest,
    Device,
    DeviceHealth,
    HealthSample,
    HealthState,
    PollResult,
    isoformat,
    utcnow,
)
from .core.protocols import DeviceDriver, DeviceSource
from .events import EventLog, HealthTransition
from .metrics import DeviceMetrics, FleetRollup, MetricsAggregator
from .registry import DeviceRegistry, RegistryStatus, SessionDirectory
from .scheduler import PollScheduler

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FleetSummary:
    counts: Dict[str, int]
    rollup: FleetRollup
    registry: RegistryStatus
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def as_dict(self) -> Dict[str, Any]:
        rollup = self.rollup.as_dict()
        return {
            "generatedAt": isoformat(self.generated_at),
            "devices": self.total,
            "counts": dict(self.counts),
            "totalBps": rollup["totalBps"],
            "topDevices": rollup["topDevices"],
            "topClients": rollup["topClients"],
            "rollupAt": rollup["computedAt"],
            "staleConfiguration": self.registry.stale,
        }


class MonitoringEngine:
    """Owns every engine component and their background tasks.

    Poll failures never surface here; they end up in device health and the
    event log. Query and command methods raise ``NotFound`` for unknown ids
    and ``InvalidRequestError`` for requests that can never run.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        drivers: Mapping[str, DeviceDriver],
        source: DeviceSource,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._drivers = drivers
        self._clock = clock or utcnow

        self.events = EventLog(
            retention=config.events.retention,
            path=config.events.path,
            clock=self._clock,
        )
        self.sessions = SessionDirectory()
        self.registry = DeviceRegistry(
            source,
            refresh_seconds=config.registry.refresh_seconds,
            stale_after_seconds=config.registry.stale_after_seconds,
            sessions=self.sessions,
            clock=self._clock,
        )
        self.metrics = MetricsAggregator(
            history_size=config.metrics.history_size,
            top_n=config.metrics.top_n,
            implausible_rate_factor=config.metrics.implausible_rate_factor,
            clock=self._clock,
            client_resolver=self.sessions.client_for,
        )
        self.scheduler = PollScheduler(
            drivers,
            polling=config.polling,
            health=config.health,
            on_result=self._handle_poll_result,
            on_transition=self._handle_transition,
        )
        self.access = AccessController(
            drivers,
            registry=self.registry,
            health=self.scheduler.health_snapshot,
            events=self.events,
            config=config.access,
            clock=self._clock,
        )

        self._last_samples: Dict[str, HealthSample] = {}
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task[None]] = []
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop_event.clear()

        if not await self.registry.refresh():
            LOGGER.warning("Starting without a device feed; will keep retrying")
        await self._sync_devices()
        self.scheduler.start()

        self._tasks = [
            asyncio.create_task(self._registry_loop(), name="registry-refresh"),
            asyncio.create_task(self._rollup_loop(), name="metrics-rollup"),
        ]
        LOGGER.info(
            "Monitoring engine started with %d device(s)", len(self.registry.list_devices())
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._stop_event.set()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        await self.scheduler.stop()
        await self.access.stop()
        await self.events.drain()
        LOGGER.info("Monitoring engine stopped")

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------
    def device_health(self, device_id: str) -> DeviceHealth:
        self.registry.get_device(device_id)
        return self.scheduler.health_snapshot(device_id) or DeviceHealth(device_id)

    def device_metrics(self, device_id: str) -> DeviceMetrics:
        self.registry.get_device(device_id)
        return self.metrics.device_metrics(device_id)

    def list_health(self) -> List[DeviceHealth]:
        snapshots = self.scheduler.health_snapshots()
        return [
            snapshots.get(device.id) or DeviceHealth(device.id)
            for device in self.registry.list_devices()
        ]

    def device_view(self, device_id: str) -> Dict[str, Any]:
        """Device definition, health, last health sample and rates in one dict."""
        device = self.registry.get_device(device_id)
        sample = self._last_samples.get(device_id)
        return {
            "device": device.as_dict(),
            "health": self.device_health(device_id).as_dict(),
            "lastSample": _sample_dict(sample) if sample else None,
            "metrics": self.metrics.device_metrics(device_id).as_dict(),
        }

    def fleet_summary(self) -> FleetSummary:
        counts = {state.value: 0 for state in HealthState}
        for health in self.list_health():
            counts[health.state.value] += 1
        return FleetSummary(
            counts=counts,
            rollup=self.metrics.last_rollup,
            registry=self.registry.status(),
            generated_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Command API
    # ------------------------------------------------------------------
    async def submit(
        self,
        client_id: str,
        action: Union[ControlAction, str],
        *,
        idempotency_key: str,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        force: bool = False,
    ) -> str:
        return await self.access.submit(
            client_id,
            action,
            idempotency_key=idempotency_key,
            device_id=device_id,
            session_id=session_id,
            payload=payload,
            force=force,
        )

    def status(self, request_id: str) -> ControlRequest:
        return self.access.status(request_id)

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> ControlRequest:
        return await self.access.wait(request_id, timeout=timeout)

    async def refresh(self, device_id: Optional[str] = None) -> Dict[str, bool]:
        """One-shot poll of one device (or all); False where a poll was already running."""
        if device_id is not None:
            self.registry.get_device(device_id)
            targets = [device_id]
        else:
            targets = list(self.scheduler.device_ids)
        results = await asyncio.gather(
            *(self.scheduler.poll_once(target) for target in targets)
        )
        return dict(zip(targets, results))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _sync_devices(self) -> None:
        _, removed = await self.scheduler.sync(self.registry.list_devices())
        for device_id in removed:
            self.metrics.forget_device(device_id)
            self.sessions.forget_device(device_id)
            self._last_samples.pop(device_id, None)

    def _handle_poll_result(self, device: Device, result: PollResult) -> None:
        self._last_samples[device.id] = result.health
        self.metrics.record_interfaces(result.interfaces)
        self.metrics.record_sessions(result.sessions)
        self.metrics.retain_sessions(device.id, (s.session_id for s in result.sessions))
        self.sessions.observe(result.sessions)

    def _handle_transition(self, transition: HealthTransition) -> None:
        self.events.append(transition)
        if transition.new_state is HealthState.OFFLINE:
            self.metrics.clear_rates(transition.device_id)

    async def _registry_loop(self) -> None:
        interval = self.registry.refresh_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            if await self.registry.refresh():
                await self._sync_devices()

    async def _rollup_loop(self) -> None:
        interval = self._config.metrics.rollup_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            rollup = self.metrics.rollup()
            LOGGER.debug(
                "Fleet rollup: %.0f bps across %d top device(s)",
                rollup.total_bps,
                len(rollup.top_devices),
            )


def _sample_dict(sample: HealthSample) -> Dict[str, Any]:
    return {
        "sampledAt": isoformat(sample.sampled_at),
        "uptimeSeconds": sample.uptime_seconds,
        "cpuPercent": sample.cpu_percent,
        "memoryPercent": (
            round(sample.memory_percent, 1) if sample.memory_percent is not None else None
        ),
        "responseTimeMs": sample.response_time_ms,
        "systemName": sample.system_name,
    }
