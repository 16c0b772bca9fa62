import pytest

from conftest import HANG, ScriptedDriver, healthy_result, make_device, wait_until

from nas_monitor.config import HealthConfig, PollingConfig
from nas_monitor.core.errors import AuthFailure, DeviceUnreachable
from nas_monitor.core.models import HealthState
from nas_monitor.scheduler import PollScheduler, compute_backoff_interval


def test_backoff_is_flat_below_threshold() -> None:
    assert compute_backoff_interval(10, 0) == 10
    assert compute_backoff_interval(10, 2, failure_threshold=3) == 10


def test_backoff_grows_monotonically_and_is_capped() -> None:
    intervals = [
        compute_backoff_interval(10, failures, failure_threshold=3, factor=2.0, max_multiplier=10.0)
        for failures in range(12)
    ]

    assert intervals == sorted(intervals)
    assert intervals[3] == 20.0
    assert intervals[4] == 40.0
    assert max(intervals) == 100.0


def _scheduler(driver, transitions=None, **health):
    return PollScheduler(
        {"routeros": driver},
        polling=PollingConfig(failure_threshold=3),
        health=HealthConfig(**health),
        on_transition=transitions.append if transitions is not None else None,
    )


@pytest.mark.asyncio
async def test_sync_adds_and_removes_pollers(driver) -> None:
    scheduler = _scheduler(driver)

    added, removed = await scheduler.sync([make_device("r1"), make_device("r2")])
    assert added == ("r1", "r2")
    assert removed == ()

    added, removed = await scheduler.sync([make_device("r1")])
    assert added == ()
    assert removed == ("r2",)
    assert scheduler.device_ids == ("r1",)
    assert scheduler.health_snapshot("r2") is None


@pytest.mark.asyncio
async def test_sync_skips_devices_without_driver(driver, caplog) -> None:
    scheduler = _scheduler(driver)

    added, _ = await scheduler.sync([make_device("r1"), make_device("x9", driver="telnet")])

    assert added == ("r1",)
    assert "No driver 'telnet' available for device x9" in caplog.text


@pytest.mark.asyncio
async def test_sync_updates_changed_definition_in_place(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1")])
    poller = scheduler.poller("r1")

    await scheduler.sync([make_device("r1", address="10.9.9.9")])

    assert scheduler.poller("r1") is poller
    assert poller.device.address == "10.9.9.9"


@pytest.mark.asyncio
async def test_sync_switches_driver_when_device_driver_changes(driver) -> None:
    snmp_driver = ScriptedDriver()
    scheduler = PollScheduler({"routeros": driver, "snmp": snmp_driver})
    await scheduler.sync([make_device("r1")])
    poller = scheduler.poller("r1")
    assert await scheduler.poll_once("r1")

    added, removed = await scheduler.sync([make_device("r1", driver="snmp")])
    assert await scheduler.poll_once("r1")

    assert (added, removed) == ((), ())
    assert scheduler.poller("r1") is poller
    assert poller.device.driver == "snmp"
    assert driver.poll_calls == ["r1"]
    assert snmp_driver.poll_calls == ["r1"]


@pytest.mark.asyncio
async def test_start_polls_immediately_and_stop_cancels(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1"), make_device("r2")])

    scheduler.start()
    try:
        await wait_until(lambda: sorted(driver.poll_calls) == ["r1", "r2"])
    finally:
        await scheduler.stop()

    # Devices added while running start at once too.
    scheduler.start()
    try:
        await scheduler.sync([make_device("r1"), make_device("r2"), make_device("r3")])
        await wait_until(lambda: "r3" in driver.poll_calls)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped_not_queued(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1", timeout_seconds=30.0)])
    driver.script_polls("r1", HANG)
    poller = scheduler.poller("r1")

    first = poller.trigger()
    await wait_until(lambda: driver.poll_calls == ["r1"])
    second = poller.trigger()

    assert first is not None
    assert second is None
    assert poller.skipped_ticks == 1
    assert await scheduler.poll_once("r1") is False
    assert driver.poll_calls == ["r1"]

    await scheduler.stop()
    assert not poller.in_flight


@pytest.mark.asyncio
async def test_slow_poll_of_one_device_does_not_delay_another(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("slow", timeout_seconds=30.0), make_device("fast")])
    driver.script_polls("slow", HANG)

    scheduler.poller("slow").trigger()
    assert await scheduler.poll_once("fast") is True
    assert scheduler.health_snapshot("fast").consecutive_successes == 1

    await scheduler.stop()


@pytest.mark.asyncio
async def test_poll_timeout_counts_as_failure(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1", timeout_seconds=0.05)])
    driver.script_polls("r1", HANG)

    assert await scheduler.poll_once("r1") is True

    health = scheduler.health_snapshot("r1")
    assert health.consecutive_failures == 1
    assert health.last_error.kind == "timeout"


@pytest.mark.asyncio
async def test_unexpected_driver_exception_is_a_protocol_error(driver, caplog) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1")])
    driver.script_polls("r1", KeyError("cpu-load"))

    await scheduler.poll_once("r1")

    assert scheduler.health_snapshot("r1").last_error.kind == "protocol_error"
    assert "Driver for r1 raised an unexpected error" in caplog.text


@pytest.mark.asyncio
async def test_backoff_applies_after_threshold_and_resets_on_success(driver) -> None:
    scheduler = _scheduler(driver)
    await scheduler.sync([make_device("r1", poll_interval_seconds=10.0)])
    poller = scheduler.poller("r1")
    driver.script_polls("r1", *(DeviceUnreachable("no route") for _ in range(4)))

    intervals = []
    for _ in range(4):
        await scheduler.poll_once("r1")
        intervals.append(poller.effective_interval)
    await scheduler.poll_once("r1")

    assert intervals == [10.0, 10.0, 20.0, 40.0]
    assert poller.effective_interval == 10.0


@pytest.mark.asyncio
async def test_transitions_follow_confirmation_rules(driver) -> None:
    transitions = []
    scheduler = _scheduler(driver, transitions=transitions, confirm_samples=2)
    await scheduler.sync([make_device("R1")])
    driver.script_polls(
        "R1",
        AuthFailure("denied"),
        AuthFailure("denied"),
        AuthFailure("denied"),
        healthy_result("R1"),
        healthy_result("R1"),
    )

    emitted_after = []
    for poll in range(1, 6):
        before = len(transitions)
        await scheduler.poll_once("R1")
        if len(transitions) > before:
            emitted_after.append(poll)

    assert emitted_after == [2, 5]
    assert [t.new_state for t in transitions] == [HealthState.OFFLINE, HealthState.ONLINE]
    assert transitions[0].reason == "auth_failure"


@pytest.mark.asyncio
async def test_result_handler_errors_do_not_break_polling(driver, caplog) -> None:
    def broken(device, result):
        raise RuntimeError("sink down")

    scheduler = PollScheduler({"routeros": driver}, on_result=broken)
    await scheduler.sync([make_device("r1")])

    await scheduler.poll_once("r1")
    await scheduler.poll_once("r1")

    assert scheduler.health_snapshot("r1").state is HealthState.ONLINE
    assert "Poll result handler failed for r1" in caplog.text


@pytest.mark.asyncio
async def test_poll_once_unknown_device(driver) -> None:
    scheduler = _scheduler(driver)

    assert await scheduler.poll_once("missing") is False
