"""Device registry and client session directory."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from .adapters.feed import DeviceFeed, SessionBinding
from .core.errors import ConfigurationError, DeviceNotFoundError
from .core.models import Device, SessionSample, isoformat, utcnow
from .core.protocols import DeviceSource

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RegistrySnapshot:
    """Immutable view of the device feed; replaced wholesale on refresh."""

    devices: Mapping[str, Device] = field(default_factory=dict)
    loaded_at: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class RegistryStatus:
    device_count: int
    last_success_at: Optional[datetime]
    last_attempt_at: Optional[datetime]
    last_error: Optional[str]
    stale: bool

    def as_dict(self) -> Dict[str, object]:
        return {
            "deviceCount": self.device_count,
            "lastSuccessAt": isoformat(self.last_success_at),
            "lastAttemptAt": isoformat(self.last_attempt_at),
            "lastError": self.last_error,
            "stale": self.stale,
        }


class SessionDirectory:
    """Resolves which device (and session) currently serves a client.

    Static bindings come from the device feed. Sessions observed live during
    polls override them, newest observation first.
    """

    def __init__(self) -> None:
        self._static: Dict[str, Tuple[str, Optional[str]]] = {}
        self._live: Dict[str, Tuple[str, str, datetime]] = {}
        self._by_session: Dict[Tuple[str, str], str] = {}

    def load(self, bindings: Iterable[SessionBinding]) -> None:
        static: Dict[str, Tuple[str, Optional[str]]] = {}
        by_session: Dict[Tuple[str, str], str] = {}
        for binding in bindings:
            static[binding.client_id] = (binding.device_id, binding.session_id)
            by_session[(binding.device_id, binding.session_id or binding.client_id)] = (
                binding.client_id
            )
        self._static = static
        self._by_session = by_session

    def observe(self, samples: Iterable[SessionSample]) -> None:
        for sample in samples:
            client_id = self._by_session.get(
                (sample.device_id, sample.session_id), sample.session_id
            )
            current = self._live.get(client_id)
            if current is None or current[2] <= sample.sampled_at:
                self._live[client_id] = (sample.device_id, sample.session_id, sample.sampled_at)

    def forget_device(self, device_id: str) -> None:
        for client_id in [c for c, v in self._live.items() if v[0] == device_id]:
            del self._live[client_id]

    def resolve(self, client_id: str) -> Optional[Tuple[str, Optional[str]]]:
        """Return ``(device_id, session_id)`` for a client, or None if unmapped."""
        live = self._live.get(client_id)
        if live is not None:
            return live[0], live[1]
        return self._static.get(client_id)

    def client_for(self, device_id: str, session_id: str) -> Optional[str]:
        client_id = self._by_session.get((device_id, session_id))
        if client_id is not None:
            return client_id
        for client, (dev, session, _) in self._live.items():
            if dev == device_id and session == session_id:
                return client
        return None


class DeviceRegistry:
    """TTL cache over the external device configuration store.

    A failed refresh keeps the last good snapshot; the registry reports
    itself stale once no refresh has succeeded for ``stale_after_seconds``.
    """

    def __init__(
        self,
        source: DeviceSource,
        *,
        refresh_seconds: float = 30.0,
        stale_after_seconds: float = 120.0,
        sessions: Optional[SessionDirectory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source = source
        self._refresh_seconds = refresh_seconds
        self._stale_after = stale_after_seconds
        self._sessions = sessions or SessionDirectory()
        self._clock = clock or utcnow
        self._snapshot = RegistrySnapshot()
        self._last_attempt_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def sessions(self) -> SessionDirectory:
        return self._sessions

    @property
    def refresh_seconds(self) -> float:
        return self._refresh_seconds

    def list_devices(self) -> Tuple[Device, ...]:
        return tuple(self._snapshot.devices.values())

    def get_device(self, device_id: str) -> Device:
        try:
            return self._snapshot.devices[device_id]
        except KeyError:
            raise DeviceNotFoundError(device_id) from None

    def is_stale(self) -> bool:
        loaded_at = self._snapshot.loaded_at
        if loaded_at is None:
            return self._last_attempt_at is not None
        return (self._clock() - loaded_at).total_seconds() > self._stale_after

    def status(self) -> RegistryStatus:
        return RegistryStatus(
            device_count=len(self._snapshot.devices),
            last_success_at=self._snapshot.loaded_at,
            last_attempt_at=self._last_attempt_at,
            last_error=self._last_error,
            stale=self.is_stale(),
        )

    async def refresh(self) -> bool:
        """Reload the feed. Returns False (keeping the old snapshot) on failure."""
        async with self._refresh_lock:
            self._last_attempt_at = self._clock()
            try:
                feed: DeviceFeed = await self._source.fetch()
            except ConfigurationError as exc:
                self._last_error = str(exc)
                LOGGER.warning(
                    "Device feed refresh failed; serving %d cached devices: %s",
                    len(self._snapshot.devices),
                    exc,
                )
                return False

            previous = set(self._snapshot.devices)
            self._snapshot = RegistrySnapshot(
                devices={device.id: device for device in feed.devices},
                loaded_at=self._clock(),
            )
            self._sessions.load(feed.sessions)
            self._last_error = None

            current = set(self._snapshot.devices)
            if current != previous:
                LOGGER.info(
                    "Device registry loaded %d devices (+%d/-%d)",
                    len(current),
                    len(current - previous),
                    len(previous - current),
                )

        return True

