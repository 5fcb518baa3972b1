"""Protocol definitions for the message bus collaborator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol


DeliveryCallback = Callable[[Any], None]


@dataclass(slots=True, frozen=True)
class ConsumerHandle:
    """Identifies one consumer attached to a channel."""

    channel: str
    consumer_tag: str


class MessageBus(Protocol):
    """Minimal contract for the publish/subscribe transport.

    Every primitive raises on failure. Delivery callbacks must be invoked on
    the event loop thread with the decoded message payload.

    Buses that can lose their connection may also offer
    ``register_disconnect_handler(handler)``; the client uses it to fail
    calls still waiting for a reply.
    """

    async def start(self) -> None:
        """Open the underlying broker connection."""
        ...

    async def stop(self) -> None:
        """Close the underlying broker connection."""
        ...

    async def publish_message(
        self,
        channel: str,
        payload: Mapping[str, Any],
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Publish ``payload`` to ``channel``."""
        ...

    async def subscribe_to(
        self, channel: str, on_delivery: DeliveryCallback
    ) -> ConsumerHandle:
        """Attach a consumer to ``channel``.

        Returns once the broker has acknowledged the subscription, so a
        message published afterwards cannot be missed.
        """
        ...

    async def unsubscribe_consumer(self, handle: ConsumerHandle) -> None:
        """Detach a consumer previously returned by :meth:`subscribe_to`."""
        ...
