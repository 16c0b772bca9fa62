"""Main application entry-point for nas-monitor."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Mapping, Optional

from . import constants
from .adapters import MQTTClient, MQTTConnectionError, MQTTEventPublisher, build_source
from .api import ApiServer
from .config import EngineConfig, load_config
from .core.protocols import DeviceDriver, DeviceSource
from .drivers import DRIVER_FACTORIES, build_drivers
from .engine import MonitoringEngine
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


class NasMonitorApp:
    """Coordinates application startup and shutdown.

    Drivers and the device source can be injected for testing; by default
    every registered driver is built and the feed source comes from the
    ``[registry]`` section.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        drivers: Optional[Mapping[str, DeviceDriver]] = None,
        source: Optional[DeviceSource] = None,
    ) -> None:
        self._config = config or load_config()
        self._drivers = drivers or build_drivers(DRIVER_FACTORIES)
        self._source = source or build_source(
            self._config.registry.source,
            token=self._config.registry.source_token,
            default_interval=self._config.polling.default_interval_seconds,
            default_timeout=self._config.polling.default_timeout_seconds,
        )
        self.engine = MonitoringEngine(
            self._config, drivers=self._drivers, source=self._source
        )
        self._api: Optional[ApiServer] = None
        self._mqtt_client: Optional[MQTTClient] = None
        self._publisher: Optional[MQTTEventPublisher] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    async def run(self) -> None:
        """Start every service and block until ``request_shutdown``."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("nas-monitor starting with config: %s", self._config.path)
        await self.start_services()
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("nas-monitor received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[EngineConfig] = None) -> None:
        config = config or load_config()
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
            max_bytes=config.logging.max_bytes,
            backup_count=config.logging.backup_count,
        )
        instance = cls(config=config)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("nas-monitor received shutdown signal")

    async def start_services(self) -> None:
        if self._config.mqtt.enabled:
            await self._connect_mqtt()

        await self.engine.start()

        if self._config.api.enabled:
            self._api = ApiServer(self.engine, self._config.api.host, self._config.api.port)
            await self._api.start()

    async def stop_services(self) -> None:
        if self._api is not None:
            await self._api.stop()
            self._api = None

        await self.engine.stop()

        if self._publisher is not None:
            self.engine.events.unsubscribe(self._publisher)
            self._publisher = None
        if self._mqtt_client is not None:
            await self._mqtt_client.disconnect()
            self._mqtt_client = None

        for name, driver in self._drivers.items():
            try:
                await driver.aclose()
            except Exception:
                LOGGER.exception("Failed to close driver %s", name)

        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            await closer()

    async def _connect_mqtt(self) -> None:
        mqtt_config = self._config.mqtt
        client = MQTTClient(
            mqtt_config,
            client_id=mqtt_config.client_id or _build_client_id(),
        )
        try:
            await client.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT unavailable, events will not be published: %s", exc)
            return

        client.register_disconnect_handler(self._on_mqtt_disconnect)
        self._mqtt_client = client
        self._publisher = MQTTEventPublisher(client, topic_prefix=mqtt_config.topic_prefix)
        self.engine.events.subscribe(self._publisher)

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if rc != 0:
            LOGGER.warning("MQTT connection lost (rc=%s); paho will reconnect", rc)


def _build_client_id() -> str:
    return f"{constants.APP_NAME}-{os.getpid()}"
