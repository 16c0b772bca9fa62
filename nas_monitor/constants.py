"""Constants used across the nas-monitor package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "nas-monitor"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_DEVICE_FEED_PATH = Path.home() / ".config" / APP_NAME / "devices.json"

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8780

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_PREFIX = APP_NAME

DEFAULT_DRIVER = "routeros"
