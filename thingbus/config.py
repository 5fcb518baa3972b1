"""Configuration loader for thingbus."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = constants.DEFAULT_KEEPALIVE_SECONDS
    use_tls: bool = False
    connect_timeout_seconds: float = constants.DEFAULT_CONNECT_TIMEOUT_SECONDS
    ack_timeout_seconds: float = constants.DEFAULT_ACK_TIMEOUT_SECONDS


@dataclass(slots=True)
class ClientConfig:
    token: Optional[str] = None
    channel_prefix: str = constants.DEFAULT_CHANNEL_PREFIX
    reply_timeout_seconds: Optional[float] = None  # None waits indefinitely


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ThingbusConfig:
    broker: BrokerConfig
    client: ClientConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _parse_timeout(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def load_config(path: Optional[Path] = None) -> ThingbusConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "use_tls": "false",
                "connect_timeout_seconds": str(
                    constants.DEFAULT_CONNECT_TIMEOUT_SECONDS
                ),
                "ack_timeout_seconds": str(constants.DEFAULT_ACK_TIMEOUT_SECONDS),
            },
            "client": {
                "channel_prefix": constants.DEFAULT_CHANNEL_PREFIX,
                "reply_timeout_seconds": "",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        client_id=parser.get("broker", "client_id", fallback=None),
        keepalive=max(
            1,
            parser.getint(
                "broker", "keepalive", fallback=constants.DEFAULT_KEEPALIVE_SECONDS
            ),
        ),
        use_tls=parser.getboolean("broker", "use_tls", fallback=False),
        connect_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "broker",
                "connect_timeout_seconds",
                fallback=constants.DEFAULT_CONNECT_TIMEOUT_SECONDS,
            ),
        ),
        ack_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "broker",
                "ack_timeout_seconds",
                fallback=constants.DEFAULT_ACK_TIMEOUT_SECONDS,
            ),
        ),
    )

    client = ClientConfig(
        token=parser.get("client", "token", fallback=None),
        channel_prefix=parser.get(
            "client", "channel_prefix", fallback=constants.DEFAULT_CHANNEL_PREFIX
        ),
        reply_timeout_seconds=_parse_timeout(
            parser.get("client", "reply_timeout_seconds", fallback=None)
        ),
    )

    log_path_value = parser.get("logging", "path", fallback=None)
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return ThingbusConfig(
        broker=broker,
        client=client,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: ThingbusConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
