"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import MqttConfig
from ..events import Event, HealthTransition

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: MqttConfig,
        *,
        client_id: str,
        keepalive: int = 60,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
        )
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s",
            self.config.broker_host,
            self.config.broker_port,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("MQTT broker did not acknowledge disconnect")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise RuntimeError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_connect, rc)

    def _handle_connect(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_disconnect, rc)

    def _handle_disconnect(self, rc: int) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        for handler in list(self._disconnect_handlers):
            try:
                handler(rc)
            except Exception:
                LOGGER.exception("MQTT disconnect handler raised an exception")


class MQTTEventPublisher:
    """Event log subscriber forwarding events to MQTT.

    Topics:
        ``{prefix}/events/{kind}/{device_id}`` every event (QoS 1).
        ``{prefix}/devices/{device_id}/state`` retained current health state,
        updated on every health transition.
    """

    def __init__(self, client: MQTTClient, *, topic_prefix: str) -> None:
        self._client = client
        self._prefix = topic_prefix.strip("/")
        self.published = 0
        self.dropped = 0

    def event_topic(self, event: Event) -> str:
        return f"{self._prefix}/events/{event.kind.value}/{event.device_id}"

    def state_topic(self, device_id: str) -> str:
        return f"{self._prefix}/devices/{device_id}/state"

    def __call__(self, event: Event) -> None:
        self._publish(self.event_topic(event), event.to_dict(), retain=False)

        if isinstance(event, HealthTransition):
            state = {
                "deviceId": event.device_id,
                "state": event.new_state.value,
                "since": event.to_dict()["occurredAtUtc"],
                "reason": event.reason,
            }
            self._publish(self.state_topic(event.device_id), state, retain=True)

    def _publish(self, topic: str, body: dict, *, retain: bool) -> None:
        payload = json.dumps(body, separators=(",", ":")).encode("utf-8")
        try:
            self._client.publish(topic, payload, qos=1, retain=retain)
        except (MQTTConnectionError, RuntimeError) as exc:
            self.dropped += 1
            LOGGER.warning("Failed to publish to %s: %s", topic, exc)
            return
        self.published += 1
