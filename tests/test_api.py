import aiohttp
import pytest
import pytest_asyncio

from conftest import wait_until

from nas_monitor.api import ApiServer
from nas_monitor.engine import MonitoringEngine

HOST = "127.0.0.1"


@pytest_asyncio.fixture
async def api(engine_config, driver, source, clock, unused_tcp_port):
    engine = MonitoringEngine(
        engine_config, drivers={"routeros": driver}, source=source, clock=clock
    )
    await engine.start()
    server = ApiServer(engine, HOST, unused_tcp_port)
    await server.start()
    try:
        async with aiohttp.ClientSession(base_url=f"http://{HOST}:{unused_tcp_port}") as session:
            yield engine, session
    finally:
        await server.stop()
        await engine.stop()


@pytest.mark.asyncio
async def test_healthz_reports_registry_state(api, source, clock, engine_config) -> None:
    engine, session = api

    async with session.get("/healthz") as response:
        payload = await response.json()
        assert response.status == 200
        assert payload["status"] == "ok"
        assert payload["registry"]["deviceCount"] == 2

    source.fail = True
    clock.advance(seconds=engine_config.registry.stale_after_seconds + 1)
    await engine.registry.refresh()

    async with session.get("/healthz") as response:
        payload = await response.json()
        assert response.status == 503
        assert payload["status"] == "degraded"
        assert payload["registry"]["lastError"] == "feed unavailable"


@pytest.mark.asyncio
async def test_devices_and_device_view(api) -> None:
    _, session = api

    async with session.get("/devices") as response:
        payload = await response.json()
    assert [item["id"] for item in payload["devices"]] == ["r1", "r2"]
    assert payload["devices"][0]["health"]["state"] in ("unknown", "online")

    async with session.get("/devices/r1") as response:
        view = await response.json()
    assert view["device"]["address"] == "10.0.0.1"
    assert set(view) == {"device", "health", "lastSample", "metrics"}

    async with session.get("/devices/nope") as response:
        assert response.status == 404
        assert "Unknown device" in (await response.json())["error"]


@pytest.mark.asyncio
async def test_refresh_endpoint_polls_device(api, driver) -> None:
    engine, session = api
    poller = engine.scheduler.poller("r1")
    await wait_until(lambda: poller.completed_polls >= 1)

    async with session.post("/devices/r1/refresh") as response:
        payload = await response.json()

    assert response.status == 200
    assert payload["polled"] is True
    assert payload["health"]["state"] == "online"


@pytest.mark.asyncio
async def test_fleet_summary(api) -> None:
    _, session = api

    async with session.get("/fleet") as response:
        payload = await response.json()

    assert payload["devices"] == 2
    assert set(payload["counts"]) == {"unknown", "online", "offline", "degraded"}
    assert payload["staleConfiguration"] is False


@pytest.mark.asyncio
async def test_submit_and_follow_request(api) -> None:
    engine, session = api
    body = {"clientId": "c-42", "action": "speed_limit", "payload": {"download": "20M"}}

    async with session.post("/requests", json=body, headers={"Idempotency-Key": "k1"}) as response:
        accepted = await response.json()
        assert response.status == 202
    request_id = accepted["requestId"]
    assert accepted["deviceId"] == "r1"
    assert accepted["sessionId"] == "alice"

    await engine.wait(request_id, timeout=2)

    async with session.post("/requests", json={**body, "idempotencyKey": "k1"}) as response:
        repeated = await response.json()
    assert repeated["requestId"] == request_id

    async with session.get(f"/requests/{request_id}") as response:
        status = await response.json()
    assert status["state"] == "succeeded"
    assert status["payload"] == {"download": 20_000_000}

    async with session.get("/events", params={"kind": "actionOutcome", "clientId": "c-42"}) as response:
        events = await response.json()
    assert [event["requestId"] for event in events["events"]] == [request_id]
    assert events["lastSequence"] >= 1

    async with session.get("/clients/c-42/history", params={"hours": "1"}) as response:
        history = await response.json()
    assert [event["requestId"] for event in history["events"]] == [request_id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "status"),
    [
        ({"data": "not json"}, 400),
        ({"json": ["list"]}, 400),
        ({"json": {"clientId": "c-42", "action": "reboot", "idempotencyKey": "x"}}, 400),
        ({"json": {"clientId": "c-42", "action": "disconnect"}}, 400),
        ({"json": {"clientId": "c-42", "action": "disconnect", "idempotencyKey": "x", "deviceId": "zz"}}, 404),
        ({"json": {"clientId": "c-42", "action": "disconnect", "idempotencyKey": "x", "payload": "oops"}}, 400),
        ({"json": {"clientId": "c-42", "action": "speed_limit", "idempotencyKey": "x", "payload": {"download": ["10M"]}}}, 400),
        ({"json": {"clientId": "c-42", "action": "disconnect", "idempotencyKey": "x", "force": "false"}}, 400),
        ({"json": {"clientId": "c-42", "action": "disconnect", "idempotencyKey": "x", "deviceId": ["r1"]}}, 400),
        ({"json": {"clientId": 42, "action": "disconnect", "idempotencyKey": "x"}}, 400),
    ],
)
async def test_submit_validation_errors(api, kwargs, status) -> None:
    _, session = api

    async with session.post("/requests", **kwargs) as response:
        assert response.status == status
        assert "error" in await response.json()


@pytest.mark.asyncio
async def test_unknown_request_and_bad_query(api) -> None:
    _, session = api

    async with session.get("/requests/does-not-exist") as response:
        assert response.status == 404
    async with session.get("/events", params={"kind": "bogus"}) as response:
        assert response.status == 400
    async with session.get("/events", params={"since": "abc"}) as response:
        assert response.status == 400
