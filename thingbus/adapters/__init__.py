"""Adapter modules for external integrations."""

from .mqtt import MQTTConnectionError, MQTTMessageBus

__all__ = [
    "MQTTConnectionError",
    "MQTTMessageBus",
]
