from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import healthy_result, interface_sample, make_device, wait_until

from nas_monitor.adapters.feed import DeviceFeed
from nas_monitor.core.errors import DeviceNotFoundError, DriverTimeout
from nas_monitor.core.models import HealthState, RequestState, SessionSample
from nas_monitor.engine import MonitoringEngine
from nas_monitor.events import EventKind

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(engine_config, driver, source, clock):
    instance = MonitoringEngine(
        engine_config, drivers={"routeros": driver}, source=source, clock=clock
    )
    yield instance
    await instance.stop()


async def _started(engine, *device_ids):
    await engine.start()
    for device_id in device_ids or engine.scheduler.device_ids:
        poller = engine.scheduler.poller(device_id)
        await wait_until(lambda: poller.completed_polls >= 1)


@pytest.mark.asyncio
async def test_start_polls_every_registered_device(engine, driver) -> None:
    await _started(engine)

    assert sorted(driver.poll_calls) == ["r1", "r2"]
    assert [health.state for health in engine.list_health()] == [
        HealthState.UNKNOWN,
        HealthState.UNKNOWN,
    ]

    assert await engine.refresh() == {"r1": True, "r2": True}

    summary = engine.fleet_summary()
    assert summary.counts["online"] == 2
    assert summary.total == 2
    assert summary.as_dict()["staleConfiguration"] is False


@pytest.mark.asyncio
async def test_flapping_device_scenario_records_two_transitions(engine, driver) -> None:
    driver.script_polls(
        "r1",
        DriverTimeout(),
        DriverTimeout(),
        DriverTimeout(),
        healthy_result("r1"),
        healthy_result("r1"),
    )
    await _started(engine, "r1")

    states = []
    for _ in range(4):
        await engine.refresh("r1")
        states.append(engine.device_health("r1").state)

    assert states == [
        HealthState.OFFLINE,
        HealthState.OFFLINE,
        HealthState.OFFLINE,
        HealthState.ONLINE,
    ]
    transitions = engine.events.events(device_id="r1", kind=EventKind.HEALTH_TRANSITION)
    assert [(t.old_state, t.new_state) for t in transitions] == [
        (HealthState.UNKNOWN, HealthState.OFFLINE),
        (HealthState.OFFLINE, HealthState.ONLINE),
    ]


@pytest.mark.asyncio
async def test_poll_results_feed_metrics_sessions_and_rollup(engine, driver) -> None:
    def result(seconds: int, bytes_in: int, session_bytes: int):
        at = T0 + timedelta(seconds=seconds)
        return healthy_result(
            "r1",
            cpu=12.5,
            interfaces=(interface_sample("r1", bytes_in=bytes_in, speed=100_000_000, at=at, name="ether1"),),
            sessions=(
                SessionSample(
                    device_id="r1",
                    session_id="alice",
                    bytes_in=session_bytes,
                    bytes_out=0,
                    sampled_at=at,
                ),
            ),
        )

    driver.script_polls("r1", result(0, 0, 0), result(10, 12_500_000, 1_250_000))
    await _started(engine, "r1")
    await engine.refresh("r1")

    metrics = engine.device_metrics("r1")
    assert metrics.interfaces[0].rate_in_bps == pytest.approx(10_000_000)
    assert metrics.sessions[0].rate_in_bps == pytest.approx(1_000_000)

    rollup = engine.metrics.rollup()
    assert rollup.top_devices[0].key == "r1"
    assert rollup.top_clients[0].key == "c-42"

    view = engine.device_view("r1")
    assert view["device"]["id"] == "r1"
    assert view["lastSample"]["cpuPercent"] == 12.5
    assert view["metrics"]["interfaces"][0]["name"] == "ether1"


@pytest.mark.asyncio
async def test_offline_device_drops_out_of_rollup(engine, driver) -> None:
    driver.script_polls(
        "r1",
        healthy_result("r1", interfaces=(interface_sample("r1", bytes_in=0, at=T0),)),
        healthy_result(
            "r1",
            interfaces=(interface_sample("r1", bytes_in=10_000, at=T0 + timedelta(seconds=10)),),
        ),
        DriverTimeout(),
        DriverTimeout(),
    )
    await _started(engine, "r1")
    await engine.refresh("r1")
    assert [entry.key for entry in engine.metrics.rollup().top_devices] == ["r1"]

    await engine.refresh("r1")
    await engine.refresh("r1")

    assert engine.device_health("r1").state is HealthState.OFFLINE
    assert engine.device_metrics("r1").interfaces == []
    assert "r1" not in [entry.key for entry in engine.metrics.rollup().top_devices]


@pytest.mark.asyncio
async def test_submit_uses_confirmed_health(engine, driver) -> None:
    driver.script_polls("r1", DriverTimeout(), DriverTimeout())
    await _started(engine, "r1")
    await engine.refresh("r1")
    assert engine.device_health("r1").state is HealthState.OFFLINE

    request_id = await engine.submit("c-42", "disconnect", idempotency_key="k1")

    status = engine.status(request_id)
    assert status.state is RequestState.FAILED
    assert status.error_code == "device_unreachable"
    assert driver.execute_calls == []
    outcomes = engine.events.events(client_id="c-42")
    assert [event.request_id for event in outcomes] == [request_id]


@pytest.mark.asyncio
async def test_removed_device_is_forgotten(engine_config, driver, source) -> None:
    engine_config.registry.refresh_seconds = 0.05
    engine = MonitoringEngine(engine_config, drivers={"routeros": driver}, source=source)
    await _started(engine)

    source.feed = DeviceFeed(devices=(make_device("r1"),), sessions=source.feed.sessions)
    try:
        await wait_until(lambda: engine.scheduler.device_ids == ("r1",))

        with pytest.raises(DeviceNotFoundError):
            engine.device_health("r2")
        assert [health.device_id for health in engine.list_health()] == ["r1"]
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(engine) -> None:
    await _started(engine)

    with pytest.raises(DeviceNotFoundError):
        await engine.refresh("missing")
    with pytest.raises(DeviceNotFoundError):
        engine.device_view("missing")


@pytest.mark.asyncio
async def test_stale_feed_is_reported_in_summary(engine, engine_config, source, clock) -> None:
    await _started(engine)
    source.fail = True
    clock.advance(seconds=engine_config.registry.stale_after_seconds + 1)

    assert await engine.registry.refresh() is False

    summary = engine.fleet_summary().as_dict()
    assert summary["staleConfiguration"] is True
    assert summary["devices"] == 2


@pytest.mark.asyncio
async def test_stop_is_idempotent(engine) -> None:
    await _started(engine)

    await engine.stop()
    await engine.stop()

    assert all(not engine.scheduler.poller(d).in_flight for d in engine.scheduler.device_ids)
