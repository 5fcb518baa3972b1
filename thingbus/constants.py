"""Constants used across the thingbus package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "thingbus"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_KEEPALIVE_SECONDS = 60
DEFAULT_CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_ACK_TIMEOUT_SECONDS = 10.0

DEFAULT_CHANNEL_PREFIX = "thingbus"

# Request headers. The MQTT adapter maps reply_to/correlation_id onto the
# MQTT v5 ResponseTopic/CorrelationData properties.
AUTHORIZATION_HEADER = "Authorization"
REPLY_TO_HEADER = "reply_to"
CORRELATION_ID_HEADER = "correlation_id"
