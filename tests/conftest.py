import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

import pytest

from nas_monitor.adapters.feed import DeviceFeed, SessionBinding
from nas_monitor.config import default_config
from nas_monitor.core.errors import ConfigurationError
from nas_monitor.core.models import (
    ActionResult,
    ControlAction,
    ControlRequest,
    Credentials,
    Device,
    HealthSample,
    InterfaceSample,
    PollResult,
)

HANG = object()


class FakeClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_device(device_id: str = "r1", **overrides: Any) -> Device:
    values: Dict[str, Any] = {
        "id": device_id,
        "address": "10.0.0.1",
        "credentials": Credentials(username="admin", password="secret"),
        "capabilities": frozenset(ControlAction),
        "poll_interval_seconds": 10.0,
        "timeout_seconds": 1.0,
    }
    values.update(overrides)
    return Device(**values)


def healthy_result(
    device_id: str = "r1",
    *,
    cpu: float = 10.0,
    memory: float = 40.0,
    interfaces: tuple = (),
    sessions: tuple = (),
) -> PollResult:
    return PollResult(
        health=HealthSample(device_id=device_id, cpu_percent=cpu, memory_percent=memory),
        interfaces=interfaces,
        sessions=sessions,
    )


def interface_sample(
    device_id: str = "r1",
    *,
    if_index: int = 1,
    bytes_in: int = 0,
    bytes_out: int = 0,
    speed: int = 1_000_000_000,
    at: Optional[datetime] = None,
    oper_up: bool = True,
    **overrides: Any,
) -> InterfaceSample:
    return InterfaceSample(
        device_id=device_id,
        if_index=if_index,
        oper_up=oper_up,
        bytes_in=bytes_in,
        bytes_out=bytes_out,
        link_speed_bps=speed,
        sampled_at=at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        **overrides,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class ScriptedDriver:
    """Deterministic driver: every outcome is queued by the test.

    Poll outcomes may be a ``PollResult``, an exception to raise, or ``HANG``
    to block until cancelled. Unscripted polls return a healthy result.
    """

    def __init__(self) -> None:
        self.poll_outcomes: Dict[str, Deque[Any]] = defaultdict(deque)
        self.execute_outcomes: Deque[Any] = deque()
        self.confirm_outcomes: Deque[bool] = deque()
        self.poll_calls: List[str] = []
        self.execute_calls: List[ControlRequest] = []
        self.confirm_calls: List[ControlRequest] = []
        self.execute_gate: Optional[asyncio.Event] = None
        self.closed = False

    def script_polls(self, device_id: str, *outcomes: Any) -> None:
        self.poll_outcomes[device_id].extend(outcomes)

    def script_executes(self, *outcomes: Any) -> None:
        self.execute_outcomes.extend(outcomes)

    async def poll(self, device: Device, timeout: float) -> PollResult:
        self.poll_calls.append(device.id)
        queue = self.poll_outcomes[device.id]
        outcome = queue.popleft() if queue else healthy_result(device.id)
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def execute(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> ActionResult:
        self.execute_calls.append(request)
        if self.execute_gate is not None:
            await self.execute_gate.wait()
        outcome = (
            self.execute_outcomes.popleft() if self.execute_outcomes else ActionResult.success()
        )
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def confirm(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> bool:
        self.confirm_calls.append(request)
        return self.confirm_outcomes.popleft() if self.confirm_outcomes else True

    async def aclose(self) -> None:
        self.closed = True


class StaticSource:
    """Device source returning a fixed feed, or failing on demand."""

    def __init__(self, devices=(), sessions=()) -> None:
        self.feed = DeviceFeed(devices=tuple(devices), sessions=tuple(sessions))
        self.fail = False
        self.fetches = 0

    async def fetch(self) -> DeviceFeed:
        self.fetches += 1
        if self.fail:
            raise ConfigurationError("feed unavailable")
        return self.feed


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def driver() -> ScriptedDriver:
    return ScriptedDriver()


@pytest.fixture
def engine_config(tmp_path):
    config = default_config(tmp_path / "nas-monitor.cfg")
    config.access.retry_backoff_seconds = 0.0
    config.access.execute_timeout_seconds = 1.0
    config.api.port = 0
    return config


@pytest.fixture
def source() -> StaticSource:
    return StaticSource(
        devices=[make_device("r1"), make_device("r2", address="10.0.0.2")],
        sessions=[SessionBinding(client_id="c-42", device_id="r1", session_id="alice")],
    )
