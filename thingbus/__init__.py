"""Awaitable thing-management calls over a publish/subscribe broker."""

from .client import CallState, PendingCall, ThingClient, classify_reply, create_client
from .core import (
    ConsumerHandle,
    DataSample,
    Device,
    MessageBus,
    Operation,
    SensorDescriptor,
)
from .errors import CallTimeoutError, RemoteError, ThingbusError, TransportError
from .routing import ChannelPair, OperationRouter
from .version import __version__

__all__ = [
    "CallState",
    "CallTimeoutError",
    "ChannelPair",
    "ConsumerHandle",
    "DataSample",
    "Device",
    "MessageBus",
    "Operation",
    "OperationRouter",
    "PendingCall",
    "RemoteError",
    "SensorDescriptor",
    "ThingClient",
    "ThingbusError",
    "TransportError",
    "__version__",
    "classify_reply",
    "create_client",
]
