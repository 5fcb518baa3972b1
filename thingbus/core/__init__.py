"""Core primitives for thingbus."""

from .models import (
    DataSample,
    Device,
    Operation,
    SensorDescriptor,
    serialize_samples,
    serialize_schema,
)
from .protocols import ConsumerHandle, DeliveryCallback, MessageBus

__all__ = [
    "ConsumerHandle",
    "DataSample",
    "DeliveryCallback",
    "Device",
    "MessageBus",
    "Operation",
    "SensorDescriptor",
    "serialize_samples",
    "serialize_schema",
]
