"""Command-line interface for nas-monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import DeviceFeed, build_source
from .app import NasMonitorApp
from .config import EngineConfig, load_config, save_config
from .core.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nas-monitor",
        description="Network access server monitoring and client access control",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the monitoring service")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    init_parser = subparsers.add_parser(
        "init-config", help="Write a configuration file populated with defaults"
    )
    init_parser.add_argument("--source", help="Device feed path or URL to record")
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing configuration file"
    )

    feed_parser = subparsers.add_parser(
        "check-feed", help="Load the device feed and list what would be monitored"
    )
    feed_parser.add_argument(
        "--source", help="Feed path or URL overriding [registry] source"
    )

    return parser


async def _load_feed(config: EngineConfig, source: Optional[str]) -> DeviceFeed:
    feed_source = build_source(
        source or config.registry.source,
        token=config.registry.source_token,
        default_interval=config.polling.default_interval_seconds,
        default_timeout=config.polling.default_timeout_seconds,
    )
    try:
        return await feed_source.fetch()
    finally:
        closer = getattr(feed_source, "aclose", None)
        if closer is not None:
            await closer()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        NasMonitorApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in ("password", "source_token") and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "init-config":
        if config.path.exists() and not args.force:
            print(f"error: {config.path!s} already exists (use --force)", file=sys.stderr)
            return 1
        if args.source:
            config.raw.set("registry", "source", args.source)
        save_config(config)
        LOGGER.info("Wrote configuration to %s", config.path)
        print(f"Configuration written to {config.path!s}")
        return 0

    if args.command == "check-feed":
        try:
            feed = asyncio.run(_load_feed(config, args.source))
        except ConfigurationError as exc:
            LOGGER.error("Device feed unusable: %s", exc)
            print(f"error: {exc}", file=sys.stderr)
            return 1

        print(f"{len(feed.devices)} device(s):")
        for device in feed.devices:
            capabilities = ",".join(sorted(a.value for a in device.capabilities)) or "-"
            print(
                f"  {device.id:<16} {device.address:<20} driver={device.driver} "
                f"every {device.poll_interval_seconds:g}s "
                f"timeout {device.timeout_seconds:g}s caps={capabilities}"
            )
        print(f"{len(feed.sessions)} session binding(s):")
        for binding in feed.sessions:
            print(
                f"  {binding.client_id:<16} -> {binding.device_id}"
                f"{'/' + binding.session_id if binding.session_id else ''}"
            )
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
