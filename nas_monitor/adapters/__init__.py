"""Adapter modules for external integrations."""

from .feed import (
    DeviceFeed,
    HttpDeviceSource,
    JsonFileSource,
    SessionBinding,
    build_source,
    parse_feed,
)
from .mqtt import MQTTClient, MQTTConnectionError, MQTTEventPublisher

__all__ = [
    "DeviceFeed",
    "HttpDeviceSource",
    "JsonFileSource",
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTEventPublisher",
    "SessionBinding",
    "build_source",
    "parse_feed",
]
