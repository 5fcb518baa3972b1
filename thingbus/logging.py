"""Logging configuration helpers."""

from __future__ import annotations

import logging
from typing import List

from .config import LoggingConfig

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers carrying per-packet broker traffic.
_NETWORK_LOGGERS = ("paho", "thingbus.adapters.mqtt.paho")


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(config: LoggingConfig) -> None:
    """Route log records to the console and, when configured, a log file.

    Broker packet traces follow the configured level only when
    ``config.log_network`` is set; otherwise they are held at WARNING so a
    DEBUG session stays readable.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.path:
        config.path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.path, encoding="utf-8"))

    formatter = logging.Formatter(_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    level = _resolve_level(config.level)
    root.setLevel(level)
    logging.captureWarnings(True)

    network_level = level if config.log_network else max(level, logging.WARNING)
    for name in _NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
