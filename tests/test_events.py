import asyncio
import json

import pytest

from conftest import FakeClock

from nas_monitor.core.models import ControlAction, HealthState
from nas_monitor.events import (
    ActionOutcome,
    EventKind,
    EventLog,
    EventSeverity,
    HealthTransition,
)


def _transition(device_id: str = "r1", new_state: HealthState = HealthState.OFFLINE, **kwargs):
    return HealthTransition(
        device_id=device_id,
        old_state=HealthState.ONLINE,
        new_state=new_state,
        **kwargs,
    )


def _outcome(client_id: str = "c-1", success: bool = True, **kwargs):
    values = dict(
        request_id="req-1",
        device_id="r1",
        action=ControlAction.DISCONNECT,
        success=success,
        attempt=1,
        client_id=client_id,
    )
    values.update(kwargs)
    return ActionOutcome(**values)


def test_append_assigns_increasing_sequence_numbers() -> None:
    log = EventLog()

    first = log.append(_transition())
    second = log.append(_outcome())

    assert (first.sequence, second.sequence) == (1, 2)
    assert log.last_sequence == 2
    assert len(log) == 2


def test_stored_event_is_a_new_immutable_copy() -> None:
    log = EventLog()
    original = _transition()

    stored = log.append(original)

    assert original.sequence == 0
    assert stored.sequence == 1
    with pytest.raises(Exception):
        stored.reason = "changed"  # type: ignore[misc]


def test_events_filters() -> None:
    log = EventLog()
    log.append(_transition("r1"))
    log.append(_transition("r2"))
    log.append(_outcome("c-1", device_id="r2"))
    log.append(_outcome("c-2", device_id="r1"))

    assert [e.sequence for e in log.events(since=2)] == [3, 4]
    assert [e.sequence for e in log.events(device_id="r2")] == [2, 3]
    assert [e.sequence for e in log.events(client_id="c-2")] == [4]
    assert [e.sequence for e in log.events(kind=EventKind.HEALTH_TRANSITION)] == [1, 2]
    assert [e.sequence for e in log.events(limit=1)] == [1]


def test_retention_bounds_memory_but_not_sequence() -> None:
    log = EventLog(retention=3)
    for _ in range(5):
        log.append(_transition())

    assert len(log) == 3
    assert [e.sequence for e in log.events()] == [3, 4, 5]


def test_client_history_is_newest_first_within_window() -> None:
    clock = FakeClock()
    log = EventLog(clock=clock)
    log.append(_outcome("c-1", request_id="old", occurred_at=clock.now))
    clock.advance(hours=30)
    log.append(_outcome("c-1", request_id="a", occurred_at=clock.advance(hours=1)))
    log.append(_outcome("c-2", request_id="other", occurred_at=clock.now))
    log.append(_outcome("c-1", request_id="b", occurred_at=clock.advance(minutes=5)))

    history = log.client_history("c-1", hours=24)

    assert [e.request_id for e in history] == ["b", "a"]


def test_event_serialisation() -> None:
    transition = _transition(reason="timeout").to_dict()
    outcome = _outcome(
        success=False, error_code="rejected", error="no such session", warnings=("stale_configuration",)
    ).to_dict()

    assert transition["kind"] == "healthTransition"
    assert transition["severity"] == EventSeverity.ERROR.value
    assert transition["newState"] == "offline"
    assert transition["reason"] == "timeout"
    assert outcome["kind"] == "actionOutcome"
    assert outcome["severity"] == "error"
    assert outcome["errorCode"] == "rejected"
    assert outcome["warnings"] == ["stale_configuration"]


def test_events_are_mirrored_to_jsonl_file(tmp_path) -> None:
    path = tmp_path / "audit" / "events.jsonl"
    log = EventLog(path=path)

    log.append(_transition())
    log.append(_outcome())

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["sequence"] for line in lines] == [1, 2]


def test_duplicate_subscription_rejected() -> None:
    log = EventLog()
    listener = lambda event: None  # noqa: E731

    log.subscribe(listener)

    with pytest.raises(ValueError):
        log.subscribe(listener)


@pytest.mark.asyncio
async def test_sync_and_async_subscribers_receive_events() -> None:
    log = EventLog()
    seen_sync: list[int] = []
    seen_async: list[int] = []

    def on_event(event) -> None:
        seen_sync.append(event.sequence)

    async def on_event_async(event) -> None:
        await asyncio.sleep(0)
        seen_async.append(event.sequence)

    log.subscribe(on_event)
    log.subscribe(on_event_async)
    log.append(_transition())
    log.append(_transition())
    await log.drain()

    assert seen_sync == [1, 2]
    assert seen_async == [1, 2]

    log.unsubscribe(on_event)
    log.append(_transition())
    assert seen_sync == [1, 2]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(caplog) -> None:
    log = EventLog()
    received: list[int] = []

    def broken(event) -> None:
        raise RuntimeError("boom")

    async def broken_async(event) -> None:
        raise RuntimeError("async boom")

    log.subscribe(broken)
    log.subscribe(broken_async)
    log.subscribe(lambda event: received.append(event.sequence))

    stored = log.append(_transition())
    await log.drain()

    assert stored.sequence == 1
    assert received == [1]
    assert "Event listener raised an exception" in caplog.text
