"""Logging configuration helpers.

Every record carries a ``device`` field taken from ``DEVICE_CONTEXT``. Poll
and control tasks set it on entry, so interleaved output from concurrent
devices can be told apart (``-`` outside any device task).
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(device)s | %(name)s | %(message)s"

DEVICE_CONTEXT: ContextVar[str] = ContextVar("nas_monitor_device", default="-")

NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "paho", "pysnmp")


class DeviceContextFilter(logging.Filter):
    """Stamps records with the device the current task is working on."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "device"):
            record.device = DEVICE_CONTEXT.get()
        return True


def bind_device(device_id: str) -> None:
    """Tag log records emitted by the current task with ``device_id``."""
    DEVICE_CONTEXT.set(device_id)


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a rotating file handler (audit trail of
        poll failures, transitions and control outcomes). When absent, only
        console logging is configured.
    log_network:
        When true, keep the verbose aiohttp/paho/pysnmp loggers at the root
        level to debug device and broker traffic.
    max_bytes, backup_count:
        Rotation limits of the file handler; ``max_bytes=0`` never rotates.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    device_filter = DeviceContextFilter()
    for handler in root.handlers:
        handler.addFilter(device_filter)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if log_network else logging.WARNING)
