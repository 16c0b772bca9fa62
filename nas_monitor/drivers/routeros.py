"""MikroTik RouterOS v7 driver using the REST API (``/rest``) over aiohttp."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import aiohttp

from ..core.errors import (
    AuthFailure,
    DeviceUnreachable,
    DriverTimeout,
    ProtocolError,
    TransportError,
)
from ..core.models import (
    ActionResult,
    ControlAction,
    ControlRequest,
    Device,
    HealthSample,
    InterfaceSample,
    PollResult,
    SessionSample,
    utcnow,
)
from ..core.utils import format_rate, parse_routeros_duration

LOGGER = logging.getLogger(__name__)

_LINK_SPEED = re.compile(r"(\d+(?:\.\d+)?)\s*([kMG])", re.IGNORECASE)
_SPEED_UNITS = {"k": 1_000, "m": 1_000_000, "g": 1_000_000_000}
_SESSION_IFACE = re.compile(r"^<pppoe-(?P<name>.+)>$")


class RouterOSHTTPError(Exception):
    """Non-2xx answer from the RouterOS REST API."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


def _truthy(value: Any) -> bool:
    return str(value).lower() == "true"


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_link_speed(value: Optional[str]) -> int:
    """Convert RouterOS speed strings (``1Gbps``, ``100M-baseT-full``) to bits/s."""
    if not value:
        return 0
    match = _LINK_SPEED.search(value)
    if match is None:
        return 0
    return int(float(match.group(1)) * _SPEED_UNITS[match.group(2).lower()])


def parse_max_limit(value: Optional[str]) -> Tuple[int, int]:
    """Split a simple-queue ``max-limit`` (``upload/download``) into bits/s."""
    if not value:
        return 0, 0
    parts = value.split("/", 1)
    if len(parts) != 2:
        return 0, 0
    return _limit_value(parts[0]), _limit_value(parts[1])


def _limit_value(text: str) -> int:
    text = text.strip()
    if not text or text == "0":
        return 0
    match = re.fullmatch(r"(\d+(?:\.\d+)?)([kMG]?)", text, re.IGNORECASE)
    if match is None:
        return 0
    multiplier = _SPEED_UNITS.get(match.group(2).lower(), 1)
    return int(float(match.group(1)) * multiplier)


def _interface_index(record: Mapping[str, Any], fallback: int) -> int:
    raw = str(record.get(".id", "")).lstrip("*")
    try:
        return int(raw, 16)
    except ValueError:
        return fallback


class RouterOSDriver:
    """Polls and controls RouterOS NAS devices through their REST API.

    PPPoE session names are the client's PPP secret name. Speed limits are
    simple queues named after the session and targeting its dynamic
    ``<pppoe-NAME>`` interface.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        verify_tls: bool = True,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._verify_tls = verify_tls

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def poll(self, device: Device, timeout: float) -> PollResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with asyncio.timeout(timeout):
                resource = await self._request(device, "GET", "/system/resource")
                interfaces = await self._request(device, "GET", "/interface")
                ethernet = await self._request(device, "GET", "/interface/ethernet")
        except asyncio.TimeoutError as exc:
            raise DriverTimeout(f"No answer within {timeout:.1f}s", device_id=device.id) from exc
        except RouterOSHTTPError as exc:
            if exc.status in (401, 403):
                raise AuthFailure(str(exc), device_id=device.id) from exc
            raise ProtocolError(str(exc), device_id=device.id) from exc
        except aiohttp.ClientConnectionError as exc:
            raise DeviceUnreachable(str(exc) or "connection failed", device_id=device.id) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ProtocolError(str(exc), device_id=device.id) from exc

        elapsed_ms = (loop.time() - started) * 1000
        now = utcnow()
        try:
            return self._build_result(device, resource, interfaces, ethernet, elapsed_ms, now)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Unexpected payload: {exc}", device_id=device.id) from exc

    def _build_result(
        self,
        device: Device,
        resource: Mapping[str, Any],
        interfaces: List[Mapping[str, Any]],
        ethernet: List[Mapping[str, Any]],
        elapsed_ms: float,
        now: datetime,
    ) -> PollResult:
        total_memory = _as_int(resource.get("total-memory"))
        free_memory = _as_int(resource.get("free-memory"))
        memory_percent = (
            (total_memory - free_memory) / total_memory * 100 if total_memory else None
        )
        cpu = resource.get("cpu-load")
        health = HealthSample(
            device_id=device.id,
            sampled_at=now,
            reachable=True,
            uptime_seconds=parse_routeros_duration(str(resource.get("uptime", ""))),
            cpu_percent=float(cpu) if cpu is not None else None,
            memory_percent=memory_percent,
            response_time_ms=round(elapsed_ms, 1),
            system_name=resource.get("board-name"),
        )

        speeds = {
            entry.get("name"): parse_link_speed(entry.get("speed") or entry.get("rate"))
            for entry in ethernet
        }

        iface_samples: List[InterfaceSample] = []
        sessions: List[SessionSample] = []
        for position, record in enumerate(interfaces):
            name = str(record.get("name", ""))
            rx = _as_int(record.get("rx-byte"))
            tx = _as_int(record.get("tx-byte"))
            if record.get("type") == "pppoe-in":
                match = _SESSION_IFACE.match(name)
                sessions.append(
                    SessionSample(
                        device_id=device.id,
                        session_id=match.group("name") if match else name,
                        bytes_in=rx,
                        bytes_out=tx,
                        sampled_at=now,
                    )
                )
                continue
            iface_samples.append(
                InterfaceSample(
                    device_id=device.id,
                    if_index=_interface_index(record, position),
                    oper_up=_truthy(record.get("running")),
                    admin_up=not _truthy(record.get("disabled")),
                    bytes_in=rx,
                    bytes_out=tx,
                    link_speed_bps=speeds.get(name, 0),
                    sampled_at=now,
                    name=name or None,
                )
            )

        return PollResult(
            health=health, interfaces=tuple(iface_samples), sessions=tuple(sessions)
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    async def execute(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> ActionResult:
        session = request.target_session
        try:
            async with asyncio.timeout(timeout):
                if request.action is ControlAction.DISCONNECT:
                    return await self._disconnect(device, session)
                if request.action is ControlAction.RECONNECT:
                    return await self._reconnect(device, session)
                return await self._speed_limit(device, session, request.payload)
        except asyncio.TimeoutError:
            return ActionResult.timeout(f"No answer within {timeout:.1f}s")
        except RouterOSHTTPError as exc:
            if exc.status >= 500:
                raise TransportError(str(exc)) from exc
            return ActionResult.rejected(str(exc))
        except aiohttp.ClientError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    async def confirm(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> bool:
        session = request.target_session
        try:
            async with asyncio.timeout(timeout):
                if request.action is ControlAction.DISCONNECT:
                    secret = await self._find_one(device, "/ppp/secret", session)
                    active = await self._find(device, "/ppp/active", session)
                    return not active and (secret is None or _truthy(secret.get("disabled")))
                if request.action is ControlAction.RECONNECT:
                    secret = await self._find_one(device, "/ppp/secret", session)
                    return secret is not None and not _truthy(secret.get("disabled"))
                queue = await self._find_one(device, "/queue/simple", session)
                return queue is not None and parse_max_limit(
                    queue.get("max-limit")
                ) == self._wanted_limit(request.payload)
        except (RouterOSHTTPError, aiohttp.ClientError) as exc:
            raise TransportError(str(exc)) from exc

    async def _disconnect(self, device: Device, session: str) -> ActionResult:
        secret = await self._find_one(device, "/ppp/secret", session)
        active = await self._find(device, "/ppp/active", session)
        if secret is None and not active:
            return ActionResult.rejected(f"Unknown PPP session {session}")

        changed = False
        if secret is not None and not _truthy(secret.get("disabled")):
            await self._request(
                device, "PATCH", f"/ppp/secret/{secret['.id']}", payload={"disabled": "true"}
            )
            changed = True
        for entry in active:
            await self._request(device, "POST", "/ppp/active/remove", payload={".id": entry[".id"]})
            changed = True

        if not changed:
            LOGGER.debug("%s on %s already disconnected", session, device.id)
            return ActionResult.success("already disconnected")
        LOGGER.info("Disconnected %s on %s", session, device.id)
        return ActionResult.success()

    async def _reconnect(self, device: Device, session: str) -> ActionResult:
        secret = await self._find_one(device, "/ppp/secret", session)
        if secret is None:
            return ActionResult.rejected(f"Unknown PPP session {session}")
        if not _truthy(secret.get("disabled")):
            return ActionResult.success("already enabled")
        await self._request(
            device, "PATCH", f"/ppp/secret/{secret['.id']}", payload={"disabled": "false"}
        )
        LOGGER.info("Re-enabled %s on %s", session, device.id)
        return ActionResult.success()

    async def _speed_limit(
        self, device: Device, session: str, payload: Mapping[str, Any]
    ) -> ActionResult:
        upload, download = self._wanted_limit(payload)
        max_limit = f"{format_rate(upload)}/{format_rate(download)}"

        queue = await self._find_one(device, "/queue/simple", session)
        if queue is not None:
            if parse_max_limit(queue.get("max-limit")) == (upload, download):
                return ActionResult.success("limit unchanged")
            await self._request(
                device, "PATCH", f"/queue/simple/{queue['.id']}", payload={"max-limit": max_limit}
            )
        else:
            if await self._find_one(device, "/ppp/secret", session) is None:
                return ActionResult.rejected(f"Unknown PPP session {session}")
            await self._request(
                device,
                "PUT",
                "/queue/simple",
                payload={"name": session, "target": f"<pppoe-{session}>", "max-limit": max_limit},
            )
        LOGGER.info("Set %s limit on %s to %s", session, device.id, max_limit)
        return ActionResult.success()

    @staticmethod
    def _wanted_limit(payload: Mapping[str, Any]) -> Tuple[int, int]:
        return int(payload.get("upload") or 0), int(payload.get("download") or 0)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    async def _find(self, device: Device, path: str, name: str) -> List[Dict[str, Any]]:
        result = await self._request(device, "GET", path, params={"name": name})
        if not isinstance(result, list):
            raise RouterOSHTTPError(200, f"expected a list from {path}")
        return [entry for entry in result if entry.get("name") == name]

    async def _find_one(self, device: Device, path: str, name: str) -> Optional[Dict[str, Any]]:
        matches = await self._find(device, path, name)
        return matches[0] if matches else None

    def _base_url(self, device: Device) -> str:
        scheme = "https" if device.use_tls else "http"
        port = f":{device.port}" if device.port else ""
        return f"{scheme}://{device.address}{port}/rest"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        device: Device,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Any:
        session = await self._ensure_session()
        creds = device.credentials
        auth = (
            aiohttp.BasicAuth(creds.username, creds.password or "")
            if creds.username
            else None
        )
        url = f"{self._base_url(device)}{path}"
        async with session.request(
            method,
            url,
            json=payload,
            params=params,
            auth=auth,
            ssl=self._verify_tls,
        ) as response:
            if response.status >= 400:
                body = await response.text()
                message = body[:200]
                try:
                    detail = json.loads(body)
                except ValueError:
                    detail = None
                if isinstance(detail, Mapping):
                    message = str(detail.get("detail") or detail.get("message") or message)
                raise RouterOSHTTPError(response.status, message)
            if response.status == 204:
                return None
            return await response.json(content_type=None)


__all__ = ["RouterOSDriver", "RouterOSHTTPError", "parse_link_speed", "parse_max_limit"]
