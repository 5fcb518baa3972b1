"""Error taxonomy surfaced by thingbus calls."""

from __future__ import annotations

from typing import Any, Mapping, Optional


class ThingbusError(Exception):
    """Base class for every failure raised by a thingbus call."""


class TransportError(ThingbusError):
    """Raised when a message bus primitive (publish, subscribe, ...) fails."""


class RemoteError(ThingbusError):
    """Raised when a reply arrives carrying a non-empty ``error`` field."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        reply: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.reply = reply


class CallTimeoutError(ThingbusError, TimeoutError):
    """Raised when no reply arrives before the call deadline."""
