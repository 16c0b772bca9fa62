"""Control request execution: disconnect, reconnect and speed limits.

``submit`` validates a request, deduplicates it by idempotency key and starts
one task that drives it through ``pending -> in_flight -> succeeded|failed``.
Only that task mutates the request record; callers read snapshots through
``status`` or ``wait``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import AccessConfig
from .core.errors import (
    ERROR_CANCELLED,
    ERROR_DEVICE_UNREACHABLE,
    ERROR_REJECTED,
    ERROR_TIMEOUT,
    ERROR_TRANSPORT,
    ERROR_UNCONFIRMED,
    STALE_CONFIGURATION,
    InvalidRequestError,
    RequestNotFoundError,
    TransportError,
)
from .core.idempotency import IdempotencyIndex
from .core.models import (
    ActionResult,
    ActionStatus,
    ControlAction,
    ControlRequest,
    Device,
    DeviceHealth,
    HealthState,
    RequestState,
    utcnow,
)
from .core.protocols import DeviceDriver
from .core.utils import parse_rate
from .events import ActionOutcome, EventLog
from .logging import bind_device
from .registry import DeviceRegistry

LOGGER = logging.getLogger(__name__)

HealthLookup = Callable[[str], Optional[DeviceHealth]]


def normalize_payload(action: ControlAction, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate the action payload; speed limits are converted to bits/s."""
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise InvalidRequestError("payload must be an object")
    payload = dict(payload)
    if action is not ControlAction.SPEED_LIMIT:
        return payload

    rates: Dict[str, Any] = {}
    for key in ("download", "upload"):
        value = payload.get(key)
        if value in (None, ""):
            continue
        try:
            rates[key] = parse_rate(value)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidRequestError(f"Invalid {key} rate: {exc}") from exc
    if not rates:
        raise InvalidRequestError("speed_limit requires a download and/or upload rate")
    payload.update(rates)
    return payload


class AccessController:
    """Executes control requests against devices with retry and read-back."""

    def __init__(
        self,
        drivers: Mapping[str, DeviceDriver],
        *,
        registry: DeviceRegistry,
        health: HealthLookup,
        events: EventLog,
        config: Optional[AccessConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._drivers = drivers
        self._registry = registry
        self._health = health
        self._events = events
        self._config = config or AccessConfig()
        self._clock = clock or utcnow
        self._requests: Dict[str, ControlRequest] = {}
        self._index = IdempotencyIndex(
            ttl_hours=self._config.request_ttl_hours,
            clock=self._clock,
            retain=self._requests.__contains__,
        )
        self._done: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._stopping = False

    @property
    def idempotency(self) -> IdempotencyIndex:
        return self._index

    async def submit(
        self,
        client_id: str,
        action: Union[ControlAction, str],
        *,
        idempotency_key: str,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        force: bool = False,
    ) -> str:
        """Accept a control request and return its id.

        A second submit with the idempotency key of a request that has not
        failed returns the first request's id and executes nothing.

        Raises:
            InvalidRequestError: The request can never run (bad action or
                payload, unsupported capability, unmapped client).
            DeviceNotFoundError: The target device is not registered.
        """
        if self._stopping:
            raise InvalidRequestError("Access controller is shutting down")
        if not client_id:
            raise InvalidRequestError("client_id is required")
        if not idempotency_key:
            raise InvalidRequestError("idempotency_key is required")
        try:
            action = ControlAction(action)
        except ValueError:
            raise InvalidRequestError(f"Unsupported action: {action!r}") from None

        async with self._index.lock(idempotency_key):
            existing_id = self._index.lookup(idempotency_key)
            if existing_id is not None:
                existing = self._requests.get(existing_id)
                if existing is not None and existing.state is not RequestState.FAILED:
                    LOGGER.debug(
                        "Idempotency key %s already owned by request %s",
                        idempotency_key,
                        existing_id,
                    )
                    return existing_id

            device, session_id = self._resolve_target(client_id, device_id, session_id)
            if not device.supports(action):
                raise InvalidRequestError(
                    f"Device {device.id} does not support {action.value}"
                )
            driver = self._drivers.get(device.driver)
            if driver is None:
                raise InvalidRequestError(f"No driver {device.driver!r} for {device.id}")

            now = self._clock()
            request = ControlRequest(
                request_id=str(uuid.uuid4()),
                client_id=client_id,
                device_id=device.id,
                action=action,
                idempotency_key=idempotency_key,
                session_id=session_id,
                payload=normalize_payload(action, payload),
                force=force,
                created_at=now,
                updated_at=now,
            )
            if self._registry.is_stale():
                request.warnings = (STALE_CONFIGURATION,)

            self._prune()
            self._requests[request.request_id] = request
            self._done[request.request_id] = asyncio.Event()
            self._index.bind(idempotency_key, request.request_id)

            LOGGER.info(
                "Accepted %s for client %s on %s (request %s)",
                action.value,
                client_id,
                device.id,
                request.request_id,
            )

            health = self._health(device.id)
            if health is not None and health.state is HealthState.OFFLINE:
                if not (action is ControlAction.RECONNECT and force):
                    self._finish(
                        request,
                        success=False,
                        error_code=ERROR_DEVICE_UNREACHABLE,
                        error=f"Device {device.id} is offline",
                    )
                    return request.request_id
                LOGGER.info("Forcing reconnect attempt on offline device %s", device.id)

            task = asyncio.create_task(
                self._run(request, device, driver), name=f"control-{request.request_id}"
            )
            self._tasks[request.request_id] = task
            task.add_done_callback(lambda _t, rid=request.request_id: self._tasks.pop(rid, None))
            return request.request_id

    def status(self, request_id: str) -> ControlRequest:
        try:
            return self._requests[request_id].snapshot()
        except KeyError:
            raise RequestNotFoundError(request_id) from None

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> ControlRequest:
        """Wait until the request is terminal and return its final snapshot."""
        done = self._done.get(request_id)
        if done is None:
            raise RequestNotFoundError(request_id)
        if timeout is None:
            await done.wait()
        else:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        return self.status(request_id)

    def requests_for_client(self, client_id: str) -> List[ControlRequest]:
        selected = [r.snapshot() for r in self._requests.values() if r.client_id == client_id]
        selected.sort(key=lambda r: r.created_at, reverse=True)
        return selected

    async def stop(self) -> None:
        """Cancel in-flight executions; unfinished requests fail as cancelled."""
        self._stopping = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for request in list(self._requests.values()):
            if not request.state.is_terminal:
                self._finish(
                    request,
                    success=False,
                    error_code=ERROR_CANCELLED,
                    error="Engine shutting down",
                )

    def _resolve_target(
        self, client_id: str, device_id: Optional[str], session_id: Optional[str]
    ) -> tuple[Device, Optional[str]]:
        if device_id is None:
            mapping = self._registry.sessions.resolve(client_id)
            if mapping is None:
                raise InvalidRequestError(f"No device is known to serve client {client_id}")
            device_id, mapped_session = mapping
            session_id = session_id or mapped_session
        return self._registry.get_device(device_id), session_id

    async def _run(self, request: ControlRequest, device: Device, driver: DeviceDriver) -> None:
        bind_device(device.id)
        try:
            await self._execute(request, device, driver)
        except asyncio.CancelledError:
            self._finish(
                request,
                success=False,
                error_code=ERROR_CANCELLED,
                error="Execution cancelled",
            )
            raise

    async def _execute(
        self, request: ControlRequest, device: Device, driver: DeviceDriver
    ) -> None:
        config = self._config
        timeout = config.execute_timeout_seconds
        error_code = ERROR_TIMEOUT
        error: Optional[str] = None

        self._update(request, state=RequestState.IN_FLIGHT)
        for attempt in range(1, config.max_attempts + 1):
            self._update(request, attempts=attempt)
            try:
                async with asyncio.timeout(timeout):
                    result = await driver.execute(device, request.snapshot(), timeout)
            except TimeoutError:
                result = ActionResult.timeout(f"No answer within {timeout:.1f}s")
            except TransportError as exc:
                error_code, error = ERROR_TRANSPORT, str(exc) or "transport error"
                result = None
            except Exception as exc:
                LOGGER.exception(
                    "Driver raised while executing request %s", request.request_id
                )
                error_code, error = ERROR_TRANSPORT, str(exc) or type(exc).__name__
                result = None

            if result is not None:
                if result.status is ActionStatus.REJECTED:
                    self._finish(
                        request,
                        success=False,
                        error_code=ERROR_REJECTED,
                        error=result.reason or "Rejected by device",
                    )
                    return
                if result.status is ActionStatus.TIMEOUT:
                    error_code, error = ERROR_TIMEOUT, result.reason or "timeout"
                elif await self._confirm(request, device, driver, timeout):
                    self._finish(request, success=True)
                    return
                else:
                    error_code = ERROR_UNCONFIRMED
                    error = "Device state did not reflect the action"

            if attempt < config.max_attempts:
                delay = config.retry_backoff_seconds * attempt
                LOGGER.warning(
                    "Request %s attempt %d/%d failed (%s); retrying in %.1fs",
                    request.request_id,
                    attempt,
                    config.max_attempts,
                    error_code,
                    delay,
                )
                await asyncio.sleep(delay)

        self._finish(request, success=False, error_code=error_code, error=error)

    async def _confirm(
        self, request: ControlRequest, device: Device, driver: DeviceDriver, timeout: float
    ) -> bool:
        try:
            async with asyncio.timeout(timeout):
                return await driver.confirm(device, request.snapshot(), timeout)
        except TimeoutError:
            LOGGER.warning("Read-back for request %s timed out", request.request_id)
        except TransportError as exc:
            LOGGER.warning("Read-back for request %s failed: %s", request.request_id, exc)
        except Exception:
            LOGGER.exception("Driver raised during read-back for %s", request.request_id)
        return False

    def _update(self, request: ControlRequest, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(request, key, value)
        request.updated_at = self._clock()

    def _finish(
        self,
        request: ControlRequest,
        *,
        success: bool,
        error_code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if request.state.is_terminal:
            return
        self._update(
            request,
            state=RequestState.SUCCEEDED if success else RequestState.FAILED,
            error_code=error_code,
            error=error,
        )

        if success:
            LOGGER.info(
                "Request %s (%s on %s) succeeded after %d attempt(s)",
                request.request_id,
                request.action.value,
                request.device_id,
                request.attempts,
            )
        else:
            LOGGER.warning(
                "Request %s (%s on %s) failed: %s %s",
                request.request_id,
                request.action.value,
                request.device_id,
                error_code,
                error or "",
            )

        self._events.append(
            ActionOutcome(
                request_id=request.request_id,
                device_id=request.device_id,
                action=request.action,
                success=success,
                attempt=request.attempts,
                client_id=request.client_id,
                error_code=error_code,
                error=error,
                warnings=request.warnings,
                occurred_at=request.updated_at,
            )
        )
        done = self._done.get(request.request_id)
        if done is not None:
            done.set()

    def _prune(self) -> None:
        cutoff = self._clock() - timedelta(hours=self._config.request_ttl_hours)
        expired = [
            rid
            for rid, request in self._requests.items()
            if request.state.is_terminal and request.updated_at < cutoff
        ]
        overflow = len(self._requests) - len(expired) - self._config.max_requests + 1
        if overflow > 0:
            terminal = sorted(
                (r for r in self._requests.values() if r.state.is_terminal and r.request_id not in expired),
                key=lambda r: r.updated_at,
            )
            expired.extend(r.request_id for r in terminal[:overflow])

        for request_id in expired:
            self._requests.pop(request_id, None)
            self._done.pop(request_id, None)
            self._index.forget(request_id)
        if expired:
            LOGGER.debug("Pruned %d finished control requests", len(expired))
