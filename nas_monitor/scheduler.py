"""Per-device poll scheduling.

Each device gets one long-lived loop task that ticks at the device's
interval. A tick starts a poll unless the previous poll for that device is
still in flight, in which case the tick is skipped rather than queued.
Polls for different devices never wait on each other.

After ``failure_threshold`` consecutive failures the tick interval grows
exponentially (capped at ``max_backoff_multiplier`` times the base) until a
successful poll resets it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from .config import HealthConfig, PollingConfig
from .core.errors import DriverError, DriverTimeout, ProtocolError
from .core.models import Device, DeviceHealth, PollResult
from .core.protocols import DeviceDriver
from .events import HealthTransition
from .health_state import DegradationPolicy, HealthStateMachine
from .logging import bind_device

LOGGER = logging.getLogger(__name__)

ResultCallback = Callable[[Device, PollResult], None]
TransitionCallback = Callable[[HealthTransition], None]


def compute_backoff_interval(
    base_interval: float,
    consecutive_failures: int,
    *,
    failure_threshold: int = 3,
    factor: float = 2.0,
    max_multiplier: float = 10.0,
) -> float:
    """Return the effective poll interval after ``consecutive_failures``.

    Examples:
        >>> compute_backoff_interval(10, 2)
        10
        >>> compute_backoff_interval(10, 3)
        20.0
        >>> compute_backoff_interval(10, 20)
        100.0
    """
    if consecutive_failures < failure_threshold:
        return base_interval
    exponent = consecutive_failures - failure_threshold + 1
    multiplier = min(factor**exponent, max_multiplier)
    return base_interval * multiplier


class DevicePoller:
    """Owns the polling loop and the health record of one device."""

    def __init__(
        self,
        device: Device,
        driver: DeviceDriver,
        *,
        machine: HealthStateMachine,
        polling: PollingConfig,
        on_result: Optional[ResultCallback] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self.device = device
        self._driver = driver
        self._machine = machine
        self._polling = polling
        self._on_result = on_result
        self._on_transition = on_transition
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._inflight: Optional[asyncio.Task[None]] = None
        self.skipped_ticks = 0
        self.completed_polls = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def effective_interval(self) -> float:
        return compute_backoff_interval(
            self.device.poll_interval_seconds,
            self._machine.snapshot().consecutive_failures,
            failure_threshold=self._polling.failure_threshold,
            factor=self._polling.backoff_factor,
            max_multiplier=self._polling.max_backoff_multiplier,
        )

    def health(self) -> DeviceHealth:
        return self._machine.snapshot()

    def update(self, device: Device, driver: DeviceDriver) -> None:
        """Adopt a changed device definition; the next poll uses ``driver``."""
        self.device = device
        self._driver = driver

    def start(self) -> None:
        if self._loop_task is not None:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(
            self._run(), name=f"poll-{self.device.id}"
        )

    async def stop(self) -> None:
        self._stop_event.set()
        tasks = [task for task in (self._loop_task, self._inflight) if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._inflight = None

    def trigger(self) -> Optional[asyncio.Task[None]]:
        """Start a poll now unless one is already running for this device."""
        if self.in_flight:
            self.skipped_ticks += 1
            LOGGER.debug(
                "Skipping poll for %s: previous poll still in flight", self.device.id
            )
            return None
        self._inflight = asyncio.create_task(self._poll())
        return self._inflight

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            self.trigger()

            interval = max(self.effective_interval, 0.01)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                continue

    async def _poll(self) -> None:
        device = self.device
        bind_device(device.id)
        try:
            async with asyncio.timeout(device.timeout_seconds):
                result = await self._driver.poll(device, device.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            self._record_failure(
                DriverTimeout(
                    f"Poll exceeded {device.timeout_seconds:.1f}s", device_id=device.id
                )
            )
            return
        except DriverError as exc:
            self._record_failure(exc)
            return
        except Exception as exc:
            LOGGER.exception("Driver for %s raised an unexpected error", device.id)
            self._record_failure(ProtocolError(str(exc), device_id=device.id))
            return

        self.completed_polls += 1
        transition = self._machine.observe_success(result.health, result.interfaces)
        if self._on_result is not None:
            try:
                self._on_result(device, result)
            except Exception:
                LOGGER.exception("Poll result handler failed for %s", device.id)
        self._emit(transition)

    def _record_failure(self, error: DriverError) -> None:
        self.completed_polls += 1
        failures = self._machine.snapshot().consecutive_failures + 1
        level = (
            logging.WARNING
            if failures == self._polling.failure_threshold
            else logging.DEBUG
        )
        LOGGER.log(
            level,
            "Poll of %s failed (%s, %d consecutive): %s",
            self.device.id,
            error.kind,
            failures,
            error.detail,
        )
        self._emit(self._machine.observe_failure(error))

    def _emit(self, transition: Optional[HealthTransition]) -> None:
        if transition is None or self._on_transition is None:
            return
        try:
            self._on_transition(transition)
        except Exception:
            LOGGER.exception("Transition handler failed for %s", self.device.id)


class PollScheduler:
    """Keeps one ``DevicePoller`` running per registered device."""

    def __init__(
        self,
        drivers: Mapping[str, DeviceDriver],
        *,
        polling: Optional[PollingConfig] = None,
        health: Optional[HealthConfig] = None,
        on_result: Optional[ResultCallback] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self._drivers = drivers
        self._polling = polling or PollingConfig()
        self._health = health or HealthConfig()
        self._policy = DegradationPolicy.from_config(self._health)
        self._on_result = on_result
        self._on_transition = on_transition
        self._pollers: Dict[str, DevicePoller] = {}
        self._running = False

    @property
    def device_ids(self) -> Tuple[str, ...]:
        return tuple(self._pollers)

    def poller(self, device_id: str) -> Optional[DevicePoller]:
        return self._pollers.get(device_id)

    def health_snapshot(self, device_id: str) -> Optional[DeviceHealth]:
        poller = self._pollers.get(device_id)
        return poller.health() if poller is not None else None

    def health_snapshots(self) -> Dict[str, DeviceHealth]:
        return {device_id: poller.health() for device_id, poller in self._pollers.items()}

    async def sync(self, devices: Iterable[Device]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        """Reconcile pollers with the registry; returns ``(added, removed)`` ids."""
        wanted: Dict[str, Device] = {}
        for device in devices:
            if device.driver not in self._drivers:
                LOGGER.error(
                    "No driver %r available for device %s; not polling it",
                    device.driver,
                    device.id,
                )
                continue
            wanted[device.id] = device

        removed = tuple(device_id for device_id in self._pollers if device_id not in wanted)
        for device_id in removed:
            poller = self._pollers.pop(device_id)
            await poller.stop()
            LOGGER.info("Stopped polling removed device %s", device_id)

        added = []
        for device_id, device in wanted.items():
            poller = self._pollers.get(device_id)
            if poller is not None:
                if poller.device.driver != device.driver:
                    LOGGER.info(
                        "Device %s switched driver from %s to %s",
                        device_id,
                        poller.device.driver,
                        device.driver,
                    )
                elif poller.device != device:
                    LOGGER.debug("Device %s definition updated", device_id)
                poller.update(device, self._drivers[device.driver])
                continue
            poller = self._build_poller(device)
            self._pollers[device_id] = poller
            added.append(device_id)
            if self._running:
                poller.start()

        if added:
            LOGGER.info("Polling %d new device(s): %s", len(added), ", ".join(added))
        return tuple(added), removed

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for poller in self._pollers.values():
            poller.start()

    async def stop(self) -> None:
        self._running = False
        pollers = list(self._pollers.values())
        await asyncio.gather(*(poller.stop() for poller in pollers))

    async def poll_once(self, device_id: str) -> bool:
        """Run a single poll now and wait for it.

        Returns False when the device already had a poll in flight.
        """
        poller = self._pollers.get(device_id)
        if poller is None:
            return False
        task = poller.trigger()
        if task is None:
            return False
        await asyncio.wait({task})
        return True

    def _build_poller(self, device: Device) -> DevicePoller:
        machine = HealthStateMachine(
            device.id,
            confirm_samples=self._health.confirm_samples,
            policy=self._policy,
        )
        return DevicePoller(
            device,
            self._drivers[device.driver],
            machine=machine,
            polling=self._polling,
            on_result=self._on_result,
            on_transition=self._on_transition,
        )
