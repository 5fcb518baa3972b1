"""Mapping of logical operations onto broker channels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from . import constants
from .core.models import Operation


@dataclass(slots=True, frozen=True)
class ChannelPair:
    request_channel: str
    reply_channel: Optional[str] = None


DEFAULT_ROUTES: Dict[Operation, tuple[str, Optional[str]]] = {
    Operation.REGISTER: ("device/register", "device/registered"),
    Operation.UNREGISTER: ("device/unregister", "device/unregistered"),
    Operation.AUTH_DEVICE: ("device/auth", "device/authenticated"),
    Operation.GET_DEVICES: ("device/list", "device/listed"),
    Operation.UPDATE_SCHEMA: ("device/schema/sent", "device/schema/updated"),
    Operation.PUBLISH_DATA: ("data/sent", None),
}


class OperationRouter:
    """Pure lookup table from operations to request/reply channels."""

    def __init__(
        self,
        prefix: str = constants.DEFAULT_CHANNEL_PREFIX,
        *,
        overrides: Optional[Mapping[Operation, ChannelPair]] = None,
    ) -> None:
        prefix = prefix.strip("/")
        self.prefix = prefix

        self._routes: Dict[Operation, ChannelPair] = {}
        for operation, (request, reply) in DEFAULT_ROUTES.items():
            self._routes[operation] = ChannelPair(
                request_channel=_join(prefix, request),
                reply_channel=_join(prefix, reply) if reply else None,
            )
        if overrides:
            self._routes.update(overrides)

    def resolve_channels(self, operation: Operation) -> ChannelPair:
        try:
            return self._routes[Operation(operation)]
        except ValueError as exc:
            raise KeyError(operation) from exc


def _join(prefix: str, channel: str) -> str:
    return f"{prefix}/{channel}" if prefix else channel
