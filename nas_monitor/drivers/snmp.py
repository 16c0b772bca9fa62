"""SNMP v2c polling driver (MIB-II, IF-MIB and HOST-RESOURCES-MIB).

Monitor-only: SNMP devices report health and interface counters, but control
actions are always rejected. Interfaces use the 64-bit ``ifHC*Octets``
counters when the agent exposes IF-MIB ``ifXTable`` and fall back to the
32-bit ``ifInOctets``/``ifOutOctets`` otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    bulk_walk_cmd,
    get_cmd,
)
from pysnmp.proto import errind
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from ..core.errors import DeviceUnreachable, DriverTimeout, ProtocolError
from ..core.models import (
    ActionResult,
    ControlRequest,
    Device,
    HealthSample,
    InterfaceSample,
    PollResult,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_SNMP_PORT = 161
DEFAULT_COMMUNITY = "public"

OID_SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
OID_SYS_NAME = "1.3.6.1.2.1.1.5.0"

OID_IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
OID_IF_SPEED = "1.3.6.1.2.1.2.2.1.5"
OID_IF_ADMIN_STATUS = "1.3.6.1.2.1.2.2.1.7"
OID_IF_OPER_STATUS = "1.3.6.1.2.1.2.2.1.8"
OID_IF_IN_OCTETS = "1.3.6.1.2.1.2.2.1.10"
OID_IF_OUT_OCTETS = "1.3.6.1.2.1.2.2.1.16"
OID_IF_HC_IN_OCTETS = "1.3.6.1.2.1.31.1.1.1.6"
OID_IF_HC_OUT_OCTETS = "1.3.6.1.2.1.31.1.1.1.10"
OID_IF_HIGH_SPEED = "1.3.6.1.2.1.31.1.1.1.15"

OID_HR_PROCESSOR_LOAD = "1.3.6.1.2.1.25.3.3.1.2"
OID_HR_STORAGE_TYPE = "1.3.6.1.2.1.25.2.3.1.2"
OID_HR_STORAGE_SIZE = "1.3.6.1.2.1.25.2.3.1.5"
OID_HR_STORAGE_USED = "1.3.6.1.2.1.25.2.3.1.6"
HR_STORAGE_RAM = "1.3.6.1.2.1.25.2.1.2"

IF_STATUS_UP = 1

WALKED_COLUMNS = (
    OID_IF_DESCR,
    OID_IF_SPEED,
    OID_IF_ADMIN_STATUS,
    OID_IF_OPER_STATUS,
    OID_IF_IN_OCTETS,
    OID_IF_OUT_OCTETS,
    OID_IF_HC_IN_OCTETS,
    OID_IF_HC_OUT_OCTETS,
    OID_IF_HIGH_SPEED,
    OID_HR_PROCESSOR_LOAD,
    OID_HR_STORAGE_TYPE,
    OID_HR_STORAGE_SIZE,
    OID_HR_STORAGE_USED,
)


class SnmpTransport(Protocol):
    """Wire access used by ``SnmpDriver``.

    ``get`` returns scalar values keyed by OID (missing objects are left
    out). ``walk`` returns a table column keyed by the row index suffix.
    Both raise ``DriverTimeout``, ``DeviceUnreachable`` or ``ProtocolError``.
    """

    async def get(self, device: Device, oids: Sequence[str], timeout: float) -> Dict[str, Any]:
        ...

    async def walk(self, device: Device, oid: str, timeout: float) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        ...


def _python_value(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value.prettyPrint()


class PysnmpTransport:
    """``SnmpTransport`` over pysnmp's asyncio high-level API (SNMP v2c)."""

    def __init__(self, *, retries: int = 0, max_repetitions: int = 25) -> None:
        self._retries = retries
        self._max_repetitions = max_repetitions
        self._engine: Optional[SnmpEngine] = None

    def _snmp_engine(self) -> SnmpEngine:
        if self._engine is None:
            self._engine = SnmpEngine()
        return self._engine

    async def _target(self, device: Device, timeout: float) -> UdpTransportTarget:
        try:
            return await UdpTransportTarget.create(
                (device.address, device.port or DEFAULT_SNMP_PORT),
                timeout=timeout,
                retries=self._retries,
            )
        except PySnmpError as exc:
            raise DeviceUnreachable(str(exc), device_id=device.id) from exc

    @staticmethod
    def _auth(device: Device) -> CommunityData:
        return CommunityData(device.credentials.community or DEFAULT_COMMUNITY, mpModel=1)

    @staticmethod
    def _check(device: Device, error_indication: Any, error_status: Any, error_index: Any) -> None:
        if error_indication:
            if isinstance(error_indication, errind.RequestTimedOut):
                raise DriverTimeout(str(error_indication), device_id=device.id)
            raise DeviceUnreachable(str(error_indication), device_id=device.id)
        if error_status:
            raise ProtocolError(
                f"{error_status.prettyPrint()} at index {int(error_index)}",
                device_id=device.id,
            )

    async def get(self, device: Device, oids: Sequence[str], timeout: float) -> Dict[str, Any]:
        target = await self._target(device, timeout)
        error_indication, error_status, error_index, var_binds = await get_cmd(
            self._snmp_engine(),
            self._auth(device),
            target,
            ContextData(),
            *(ObjectType(ObjectIdentity(oid)) for oid in oids),
        )
        self._check(device, error_indication, error_status, error_index)

        values: Dict[str, Any] = {}
        for name, value in var_binds:
            if isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView)):
                continue
            values[str(name)] = _python_value(value)
        return values

    async def walk(self, device: Device, oid: str, timeout: float) -> Dict[str, Any]:
        target = await self._target(device, timeout)
        prefix = oid + "."
        column: Dict[str, Any] = {}
        async for error_indication, error_status, error_index, var_binds in bulk_walk_cmd(
            self._snmp_engine(),
            self._auth(device),
            target,
            ContextData(),
            0,
            self._max_repetitions,
            ObjectType(ObjectIdentity(oid)),
            lexicographicMode=False,
        ):
            self._check(device, error_indication, error_status, error_index)
            for name, value in var_binds:
                key = str(name)
                if not key.startswith(prefix) or isinstance(value, EndOfMibView):
                    continue
                column[key[len(prefix):]] = _python_value(value)
        return column

    async def aclose(self) -> None:
        if self._engine is not None:
            self._engine.close_dispatcher()
            self._engine = None


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _memory_percent(columns: Mapping[str, Mapping[str, Any]]) -> Optional[float]:
    sizes = columns[OID_HR_STORAGE_SIZE]
    used = columns[OID_HR_STORAGE_USED]
    for index, storage_type in columns[OID_HR_STORAGE_TYPE].items():
        if str(storage_type).lstrip(".") != HR_STORAGE_RAM:
            continue
        size = _int(sizes.get(index))
        if size > 0:
            return _int(used.get(index)) / size * 100
    return None


class SnmpDriver:
    """Polls devices over SNMP v2c using the feed's community string."""

    def __init__(self, *, transport: Optional[SnmpTransport] = None) -> None:
        self._transport: SnmpTransport = transport or PysnmpTransport()

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def poll(self, device: Device, timeout: float) -> PollResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with asyncio.timeout(timeout):
                scalars = await self._transport.get(
                    device, (OID_SYS_UPTIME, OID_SYS_NAME), timeout
                )
                columns: Dict[str, Dict[str, Any]] = {}
                for oid in WALKED_COLUMNS:
                    columns[oid] = await self._transport.walk(device, oid, timeout)
        except TimeoutError as exc:
            raise DriverTimeout(f"No answer within {timeout:.1f}s", device_id=device.id) from exc

        if OID_SYS_UPTIME not in scalars:
            raise ProtocolError("Agent did not return sysUpTime", device_id=device.id)

        elapsed_ms = (loop.time() - started) * 1000
        now = utcnow()

        loads = [_int(value) for value in columns[OID_HR_PROCESSOR_LOAD].values()]
        sys_name = scalars.get(OID_SYS_NAME)
        health = HealthSample(
            device_id=device.id,
            sampled_at=now,
            reachable=True,
            uptime_seconds=_int(scalars[OID_SYS_UPTIME]) // 100,
            cpu_percent=sum(loads) / len(loads) if loads else None,
            memory_percent=_memory_percent(columns),
            response_time_ms=round(elapsed_ms, 1),
            system_name=str(sys_name) if sys_name else None,
        )
        return PollResult(health=health, interfaces=self._interfaces(device, columns, now))

    def _interfaces(self, device, columns, now) -> Tuple[InterfaceSample, ...]:
        hc_in = columns[OID_IF_HC_IN_OCTETS]
        hc_out = columns[OID_IF_HC_OUT_OCTETS]
        high_speed = columns[OID_IF_HIGH_SPEED]

        samples = []
        for index, descr in sorted(columns[OID_IF_DESCR].items(), key=lambda item: _int(item[0])):
            if index in hc_in and index in hc_out:
                bytes_in, bytes_out, bits = _int(hc_in[index]), _int(hc_out[index]), 64
            else:
                bytes_in = _int(columns[OID_IF_IN_OCTETS].get(index))
                bytes_out = _int(columns[OID_IF_OUT_OCTETS].get(index))
                bits = 32

            # ifSpeed saturates at 2^32-1; ifHighSpeed is in Mbit/s.
            speed = _int(high_speed.get(index)) * 1_000_000
            if speed <= 0:
                speed = _int(columns[OID_IF_SPEED].get(index))

            samples.append(
                InterfaceSample(
                    device_id=device.id,
                    if_index=_int(index),
                    oper_up=_int(columns[OID_IF_OPER_STATUS].get(index)) == IF_STATUS_UP,
                    admin_up=_int(columns[OID_IF_ADMIN_STATUS].get(index)) == IF_STATUS_UP,
                    bytes_in=bytes_in,
                    bytes_out=bytes_out,
                    link_speed_bps=speed,
                    sampled_at=now,
                    name=str(descr) or None,
                    counter_bits=bits,
                )
            )
        return tuple(samples)

    async def execute(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> ActionResult:
        LOGGER.warning(
            "Rejecting %s on %s: SNMP devices are monitor-only",
            request.action.value,
            device.id,
        )
        return ActionResult.rejected("SNMP driver does not support control actions")

    async def confirm(
        self, device: Device, request: ControlRequest, timeout: float
    ) -> bool:
        return False


__all__ = ["PysnmpTransport", "SnmpDriver", "SnmpTransport"]
