"""Device configuration feed sources.

The rest of the application owns device provisioning and the client/session
mapping. This module reads its export, either a JSON file on disk or an HTTP
endpoint, in the shape::

    {
      "devices": [
        {"id": "r1", "address": "10.0.0.1", "credentials": {...},
         "capabilities": ["disconnect"], "pollIntervalSeconds": 10,
         "timeoutSeconds": 5}
      ],
      "sessions": [{"clientId": "c-42", "deviceId": "r1", "sessionId": "alice"}]
    }
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Tuple

import aiohttp

from .. import constants
from ..core.errors import ConfigurationError
from ..core.models import ControlAction, Credentials, Device

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SessionBinding:
    """Static client -> device/session assignment from the feed."""

    client_id: str
    device_id: str
    session_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class DeviceFeed:
    devices: Tuple[Device, ...] = ()
    sessions: Tuple[SessionBinding, ...] = ()


def parse_feed(
    payload: Any,
    *,
    default_interval: float = 30.0,
    default_timeout: float = 5.0,
) -> DeviceFeed:
    """Build a ``DeviceFeed`` from decoded JSON, skipping invalid records."""

    if isinstance(payload, list):
        payload = {"devices": payload}
    if not isinstance(payload, Mapping):
        raise ConfigurationError("Device feed must be a JSON object")

    devices: dict[str, Device] = {}
    for record in _records(payload.get("devices")):
        try:
            device = _parse_device(record, default_interval, default_timeout)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Skipping invalid device record %r: %s", record, exc)
            continue
        if device.id in devices:
            LOGGER.warning("Duplicate device id %s in feed; keeping the last one", device.id)
        devices[device.id] = device

    sessions: list[SessionBinding] = []
    for record in _records(payload.get("sessions")):
        client_id = record.get("clientId")
        device_id = record.get("deviceId")
        if not client_id or not device_id:
            LOGGER.warning("Skipping invalid session record %r", record)
            continue
        session_id = record.get("sessionId")
        sessions.append(
            SessionBinding(
                client_id=str(client_id),
                device_id=str(device_id),
                session_id=str(session_id) if session_id else None,
            )
        )

    return DeviceFeed(devices=tuple(devices.values()), sessions=tuple(sessions))


def _records(value: Any) -> Iterable[Mapping[str, Any]]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigurationError("Feed sections must be JSON arrays")
    return [item for item in value if isinstance(item, Mapping)]


def _parse_device(
    record: Mapping[str, Any], default_interval: float, default_timeout: float
) -> Device:
    device_id = str(record["id"]).strip()
    address = str(record["address"]).strip()
    if not device_id or not address:
        raise ValueError("id and address are required")

    creds = record.get("credentials") or {}
    if not isinstance(creds, Mapping):
        raise TypeError("credentials must be an object")

    capabilities = frozenset(
        ControlAction(str(value).strip().lower())
        for value in record.get("capabilities") or ()
    )

    interval = float(record.get("pollIntervalSeconds") or default_interval)
    timeout = float(record.get("timeoutSeconds") or default_timeout)
    if interval <= 0 or timeout <= 0:
        raise ValueError("pollIntervalSeconds and timeoutSeconds must be positive")

    port = record.get("port")
    return Device(
        id=device_id,
        address=address,
        credentials=Credentials(
            username=creds.get("username"),
            password=creds.get("password"),
            community=creds.get("community"),
        ),
        capabilities=capabilities,
        poll_interval_seconds=interval,
        timeout_seconds=timeout,
        name=record.get("name"),
        driver=str(record.get("driver") or constants.DEFAULT_DRIVER),
        port=int(port) if port is not None else None,
        use_tls=bool(record.get("useTls", True)),
    )


class JsonFileSource:
    """Reads the device feed from a JSON file."""

    def __init__(
        self,
        path: Path,
        *,
        default_interval: float = 30.0,
        default_timeout: float = 5.0,
    ) -> None:
        self._path = path
        self._default_interval = default_interval
        self._default_timeout = default_timeout

    async def fetch(self) -> DeviceFeed:
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read device feed {self._path}: {exc}") from exc
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {self._path}: {exc}") from exc
        return parse_feed(
            payload,
            default_interval=self._default_interval,
            default_timeout=self._default_timeout,
        )


class HttpDeviceSource:
    """Fetches the device feed from an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        default_interval: float = 30.0,
        default_timeout: float = 5.0,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._session = session
        self._owns_session = session is None
        self._default_interval = default_interval
        self._default_timeout = default_timeout

    async def fetch(self) -> DeviceFeed:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with asyncio.timeout(self._timeout):
                async with self._session.get(self._url, headers=self._headers) as response:
                    if response.status == 401:
                        raise ConfigurationError("Device feed rejected credentials (401)")
                    if response.status != 200:
                        body = await response.text()
                        raise ConfigurationError(
                            f"Device feed returned status {response.status}: {body[:200]}"
                        )
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ConfigurationError(f"Device feed request timed out ({self._url})") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ConfigurationError(f"Device feed request failed: {exc}") from exc

        return parse_feed(
            payload,
            default_interval=self._default_interval,
            default_timeout=self._default_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def build_source(
    source: str,
    *,
    token: Optional[str] = None,
    default_interval: float = 30.0,
    default_timeout: float = 5.0,
) -> JsonFileSource | HttpDeviceSource:
    """Pick a feed source from a config value (URL or filesystem path)."""

    if source.startswith(("http://", "https://")):
        return HttpDeviceSource(
            source,
            token=token,
            default_interval=default_interval,
            default_timeout=default_timeout,
        )
    return JsonFileSource(
        Path(source).expanduser(),
        default_interval=default_interval,
        default_timeout=default_timeout,
    )
