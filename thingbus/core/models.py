"""Domain models for things, their schema and telemetry samples."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Union


class Operation(str, Enum):
    REGISTER = "register"
    UNREGISTER = "unregister"
    AUTH_DEVICE = "auth_device"
    GET_DEVICES = "get_devices"
    UPDATE_SCHEMA = "update_schema"
    PUBLISH_DATA = "publish_data"

    @property
    def expects_reply(self) -> bool:
        return self is not Operation.PUBLISH_DATA


@dataclass(slots=True, frozen=True)
class SensorDescriptor:
    """One entry of a thing's schema.

    The position of a descriptor inside a schema is meaningful: data samples
    are correlated with sensors by index, so schemas are always kept as
    ordered lists.
    """

    sensor_id: int
    type_id: int
    value_type: int
    unit: int
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensorId": self.sensor_id,
            "typeId": self.type_id,
            "valueType": self.value_type,
            "unit": self.unit,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SensorDescriptor":
        return cls(
            sensor_id=int(data["sensorId"]),
            type_id=int(data["typeId"]),
            value_type=int(data["valueType"]),
            unit=int(data["unit"]),
            name=str(data["name"]),
        )


@dataclass(slots=True)
class Device:
    id: str
    name: str
    schema: List[SensorDescriptor] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "schema": [sensor.to_dict() for sensor in self.schema],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Device":
        schema = data.get("schema") or []
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            schema=[SensorDescriptor.from_dict(entry) for entry in schema],
        )


@dataclass(slots=True, frozen=True)
class DataSample:
    sensor_id: int
    value: Union[bool, int, float, str]

    def to_dict(self) -> Dict[str, Any]:
        return {"sensorId": self.sensor_id, "value": self.value}


SchemaEntry = Union[SensorDescriptor, Mapping[str, Any]]
SampleEntry = Union[DataSample, Mapping[str, Any]]


def serialize_schema(schema: Iterable[SchemaEntry]) -> List[Dict[str, Any]]:
    """Return the wire form of ``schema``, keeping sensor order intact."""

    return [
        entry.to_dict() if isinstance(entry, SensorDescriptor) else dict(entry)
        for entry in schema
    ]


def serialize_samples(samples: Iterable[SampleEntry]) -> List[Dict[str, Any]]:
    return [
        entry.to_dict() if isinstance(entry, DataSample) else dict(entry)
        for entry in samples
    ]
