"""HTTP query/command API for the monitoring engine."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from .core.errors import InvalidRequestError, NotFound
from .engine import MonitoringEngine
from .events import EventKind

LOGGER = logging.getLogger(__name__)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except NotFound as exc:
        return _error(404, str(exc))
    except InvalidRequestError as exc:
        return _error(400, str(exc))


def _int_query(request: web.Request, name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidRequestError(f"{name} must be an integer") from None


def _str_field(body: Dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidRequestError(f"{name} must be a string")
    return value


class ApiServer:
    """aiohttp server exposing health, metrics, control requests and events."""

    def __init__(self, engine: MonitoringEngine, host: str, port: int) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[_error_middleware])
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/devices", self._handle_devices)
        app.router.add_get("/devices/{device_id}", self._handle_device)
        app.router.add_post("/devices/{device_id}/refresh", self._handle_refresh)
        app.router.add_get("/fleet", self._handle_fleet)
        app.router.add_post("/requests", self._handle_submit)
        app.router.add_get("/requests/{request_id}", self._handle_request_status)
        app.router.add_get("/events", self._handle_events)
        app.router.add_get("/clients/{client_id}/history", self._handle_client_history)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("API listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        status = self._engine.registry.status()
        payload = {
            "status": "degraded" if status.stale else "ok",
            "registry": status.as_dict(),
        }
        return web.json_response(payload, status=503 if status.stale else 200)

    async def _handle_devices(self, request: web.Request) -> web.Response:
        health = {item.device_id: item for item in self._engine.list_health()}
        devices = [
            {**device.as_dict(), "health": health[device.id].as_dict()}
            for device in self._engine.registry.list_devices()
        ]
        return web.json_response({"devices": devices})

    async def _handle_device(self, request: web.Request) -> web.Response:
        return web.json_response(self._engine.device_view(request.match_info["device_id"]))

    async def _handle_refresh(self, request: web.Request) -> web.Response:
        device_id = request.match_info["device_id"]
        results = await self._engine.refresh(device_id)
        return web.json_response(
            {
                "deviceId": device_id,
                "polled": results.get(device_id, False),
                "health": self._engine.device_health(device_id).as_dict(),
            }
        )

    async def _handle_fleet(self, request: web.Request) -> web.Response:
        return web.json_response(self._engine.fleet_summary().as_dict())

    async def _handle_submit(self, request: web.Request) -> web.Response:
        try:
            body: Dict[str, Any] = await request.json()
        except json.JSONDecodeError:
            raise InvalidRequestError("Request body must be JSON") from None
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")

        key = _str_field(body, "idempotencyKey") or request.headers.get("Idempotency-Key")
        force = body.get("force", False)
        if not isinstance(force, bool):
            raise InvalidRequestError("force must be a boolean")
        request_id = await self._engine.submit(
            _str_field(body, "clientId") or "",
            _str_field(body, "action") or "",
            idempotency_key=key or "",
            device_id=_str_field(body, "deviceId"),
            session_id=_str_field(body, "sessionId"),
            payload=body.get("payload"),
            force=force,
        )
        snapshot = self._engine.status(request_id)
        return web.json_response(snapshot.as_dict(), status=202)

    async def _handle_request_status(self, request: web.Request) -> web.Response:
        snapshot = self._engine.status(request.match_info["request_id"])
        return web.json_response(snapshot.as_dict())

    async def _handle_events(self, request: web.Request) -> web.Response:
        kind_value = request.query.get("kind")
        try:
            kind = EventKind(kind_value) if kind_value else None
        except ValueError:
            raise InvalidRequestError(f"Unknown event kind: {kind_value}") from None

        events = self._engine.events.events(
            since=_int_query(request, "since", 0) or 0,
            device_id=request.query.get("deviceId"),
            client_id=request.query.get("clientId"),
            kind=kind,
            limit=_int_query(request, "limit"),
        )
        return web.json_response(
            {
                "lastSequence": self._engine.events.last_sequence,
                "events": [event.to_dict() for event in events],
            }
        )

    async def _handle_client_history(self, request: web.Request) -> web.Response:
        client_id = request.match_info["client_id"]
        hours = _int_query(request, "hours", 24) or 24
        history = self._engine.events.client_history(client_id, hours=hours)
        return web.json_response(
            {"clientId": client_id, "events": [event.to_dict() for event in history]}
        )
