"""Configuration loader for nas-monitor."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class RegistryConfig:
    source: str = str(constants.DEFAULT_DEVICE_FEED_PATH)
    source_token: Optional[str] = None
    refresh_seconds: float = 30.0
    stale_after_seconds: float = 120.0


@dataclass(slots=True)
class PollingConfig:
    default_interval_seconds: float = 30.0
    default_timeout_seconds: float = 5.0
    failure_threshold: int = 3  # Consecutive failures before backoff kicks in
    backoff_factor: float = 2.0
    max_backoff_multiplier: float = 10.0


@dataclass(slots=True)
class HealthConfig:
    confirm_samples: int = 2
    cpu_degraded_percent: Optional[float] = 90.0
    memory_degraded_percent: Optional[float] = 95.0
    interface_down_degrades: bool = True


@dataclass(slots=True)
class MetricsConfig:
    history_size: int = 10
    top_n: int = 5
    implausible_rate_factor: float = 2.0
    rollup_interval_seconds: float = 30.0


@dataclass(slots=True)
class AccessConfig:
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    execute_timeout_seconds: float = 10.0
    request_ttl_hours: int = 24
    max_requests: int = 10000


@dataclass(slots=True)
class EventsConfig:
    retention: int = 10000
    path: Optional[Path] = None


@dataclass(slots=True)
class MqttConfig:
    enabled: bool = False
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX
    client_id: Optional[str] = None


@dataclass(slots=True)
class ApiConfig:
    enabled: bool = True
    host: str = constants.DEFAULT_API_HOST
    port: int = constants.DEFAULT_API_PORT


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


@dataclass(slots=True)
class EngineConfig:
    registry: RegistryConfig
    polling: PollingConfig
    health: HealthConfig
    metrics: MetricsConfig
    access: AccessConfig
    events: EventsConfig
    mqtt: MqttConfig
    api: ApiConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def default_config(path: Optional[Path] = None) -> EngineConfig:
    """Build a config with every section at its default value."""

    return EngineConfig(
        registry=RegistryConfig(),
        polling=PollingConfig(),
        health=HealthConfig(),
        metrics=MetricsConfig(),
        access=AccessConfig(),
        events=EventsConfig(),
        mqtt=MqttConfig(),
        api=ApiConfig(),
        logging=LoggingConfig(),
        raw=ConfigParser(),
        path=path or constants.DEFAULT_CONFIG_PATH,
    )


def _optional_str(parser: ConfigParser, section: str, key: str) -> Optional[str]:
    value = parser.get(section, key, fallback="").strip()
    return value or None


def _optional_threshold(parser: ConfigParser, section: str, key: str) -> Optional[float]:
    # An empty value or a non-positive number disables the threshold.
    value = parser.get(section, key, fallback="").strip()
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "registry": {
                "source": str(constants.DEFAULT_DEVICE_FEED_PATH),
                "refresh_seconds": "30",
                "stale_after_seconds": "120",
            },
            "polling": {
                "default_interval_seconds": "30",
                "default_timeout_seconds": "5",
                "failure_threshold": "3",
                "backoff_factor": "2.0",
                "max_backoff_multiplier": "10",
            },
            "health": {
                "confirm_samples": "2",
                "cpu_degraded_percent": "90",
                "memory_degraded_percent": "95",
                "interface_down_degrades": "true",
            },
            "metrics": {
                "history_size": "10",
                "top_n": "5",
                "implausible_rate_factor": "2.0",
                "rollup_interval_seconds": "30",
            },
            "access": {
                "max_attempts": "3",
                "retry_backoff_seconds": "2.0",
                "execute_timeout_seconds": "10",
                "request_ttl_hours": "24",
                "max_requests": "10000",
            },
            "events": {
                "retention": "10000",
                "path": "",
            },
            "mqtt": {
                "enabled": "false",
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
            },
            "api": {
                "enabled": "true",
                "host": constants.DEFAULT_API_HOST,
                "port": str(constants.DEFAULT_API_PORT),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
                "max_bytes": str(10 * 1024 * 1024),
                "backup_count": "5",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("mqtt", "broker_host")
    broker_port_value = parser.getint(
        "mqtt", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("mqtt", "broker_host", host_part)
            parser.set("mqtt", "broker_port", str(parsed_port))

    registry = RegistryConfig(
        source=parser.get("registry", "source").strip(),
        source_token=_optional_str(parser, "registry", "source_token"),
        refresh_seconds=max(
            1.0, parser.getfloat("registry", "refresh_seconds", fallback=30.0)
        ),
        stale_after_seconds=max(
            1.0, parser.getfloat("registry", "stale_after_seconds", fallback=120.0)
        ),
    )

    polling = PollingConfig(
        default_interval_seconds=max(
            0.1,
            parser.getfloat("polling", "default_interval_seconds", fallback=30.0),
        ),
        default_timeout_seconds=max(
            0.1,
            parser.getfloat("polling", "default_timeout_seconds", fallback=5.0),
        ),
        failure_threshold=max(
            1, parser.getint("polling", "failure_threshold", fallback=3)
        ),
        backoff_factor=max(
            1.0, parser.getfloat("polling", "backoff_factor", fallback=2.0)
        ),
        max_backoff_multiplier=max(
            1.0, parser.getfloat("polling", "max_backoff_multiplier", fallback=10.0)
        ),
    )

    health = HealthConfig(
        confirm_samples=max(1, parser.getint("health", "confirm_samples", fallback=2)),
        cpu_degraded_percent=_optional_threshold(
            parser, "health", "cpu_degraded_percent"
        ),
        memory_degraded_percent=_optional_threshold(
            parser, "health", "memory_degraded_percent"
        ),
        interface_down_degrades=parser.getboolean(
            "health", "interface_down_degrades", fallback=True
        ),
    )

    metrics = MetricsConfig(
        history_size=max(2, parser.getint("metrics", "history_size", fallback=10)),
        top_n=max(1, parser.getint("metrics", "top_n", fallback=5)),
        implausible_rate_factor=max(
            1.0, parser.getfloat("metrics", "implausible_rate_factor", fallback=2.0)
        ),
        rollup_interval_seconds=max(
            1.0, parser.getfloat("metrics", "rollup_interval_seconds", fallback=30.0)
        ),
    )

    access = AccessConfig(
        max_attempts=max(1, parser.getint("access", "max_attempts", fallback=3)),
        retry_backoff_seconds=max(
            0.0, parser.getfloat("access", "retry_backoff_seconds", fallback=2.0)
        ),
        execute_timeout_seconds=max(
            0.1, parser.getfloat("access", "execute_timeout_seconds", fallback=10.0)
        ),
        request_ttl_hours=max(
            0, parser.getint("access", "request_ttl_hours", fallback=24)
        ),
        max_requests=max(10, parser.getint("access", "max_requests", fallback=10000)),
    )

    events_path = _optional_str(parser, "events", "path")
    events = EventsConfig(
        retention=max(10, parser.getint("events", "retention", fallback=10000)),
        path=Path(events_path).expanduser() if events_path else None,
    )

    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=_optional_str(parser, "mqtt", "username"),
        password=_optional_str(parser, "mqtt", "password"),
        topic_prefix=parser.get(
            "mqtt", "topic_prefix", fallback=constants.DEFAULT_TOPIC_PREFIX
        ).strip("/"),
        client_id=_optional_str(parser, "mqtt", "client_id"),
    )

    api = ApiConfig(
        enabled=parser.getboolean("api", "enabled", fallback=True),
        host=parser.get("api", "host", fallback=constants.DEFAULT_API_HOST),
        port=parser.getint("api", "port", fallback=constants.DEFAULT_API_PORT),
    )

    log_path = _optional_str(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path).expanduser() if log_path else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        max_bytes=max(0, parser.getint("logging", "max_bytes", fallback=10 * 1024 * 1024)),
        backup_count=max(0, parser.getint("logging", "backup_count", fallback=5)),
    )

    return EngineConfig(
        registry=registry,
        polling=polling,
        health=health,
        metrics=metrics,
        access=access,
        events=events,
        mqtt=mqtt,
        api=api,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: EngineConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
