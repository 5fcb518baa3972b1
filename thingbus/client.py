"""Request/response client for thing management over a pub/sub broker.

The broker only moves messages through named channels. Each remote call is
turned into a correlated exchange:

1. a reply consumer is attached to a channel unique to the call,
2. the request is published once the subscription is acknowledged,
3. the first reply completes the call (``error`` replies become failures),
4. the reply consumer is always released, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from . import constants
from .adapters.mqtt import MQTTMessageBus
from .config import ThingbusConfig
from .core.models import (
    Operation,
    SampleEntry,
    SchemaEntry,
    serialize_samples,
    serialize_schema,
)
from .core.protocols import ConsumerHandle, MessageBus
from .errors import CallTimeoutError, RemoteError, TransportError
from .routing import OperationRouter

LOGGER = logging.getLogger(__name__)


class _UseClientDefault(Enum):
    """Marker for "fall back to the client's reply timeout"."""

    TIMEOUT = "default"


DEFAULT_TIMEOUT = _UseClientDefault.TIMEOUT

# Seconds to wait for a reply, None to wait indefinitely.
Timeout = Union[float, None, _UseClientDefault]


class CallState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    PUBLISHED = "published"
    AWAITING_REPLY = "awaiting_reply"
    RESOLVED = "resolved"
    REJECTED = "rejected"


@dataclass(slots=True)
class ReplyOutcome:
    """Classified reply: either a payload or an error message."""

    payload: Any
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_reply(payload: Any) -> ReplyOutcome:
    """Decide once whether a delivered reply is a success or a failure.

    A non-empty ``error`` field fails the call with that text verbatim. An
    empty or missing ``error`` is a success, even when sibling fields such as
    ``schema`` are null.
    """

    if not isinstance(payload, Mapping):
        return ReplyOutcome(payload, f"Malformed reply: {payload!r}")

    error = payload.get("error")
    if not error:
        return ReplyOutcome(payload)
    if isinstance(error, Mapping) and error.get("message"):
        return ReplyOutcome(payload, str(error["message"]))
    return ReplyOutcome(payload, str(error))


@dataclass(slots=True)
class PendingCall:
    """In-flight correlated exchange owned by :class:`ThingClient`.

    ``future`` is the write-once completion slot: :meth:`resolve` and
    :meth:`reject` only take effect while it is still pending.
    """

    operation: Operation
    correlation_id: str
    reply_channel: str
    future: asyncio.Future[Any]
    handle: Optional[ConsumerHandle] = None
    deadline: Optional[float] = None
    state: CallState = CallState.IDLE
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, payload: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(payload)
        self.state = CallState.RESOLVED
        return True

    def reject(self, exc: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(exc)
        self.state = CallState.REJECTED
        return True

    def expire(self) -> None:
        if self.reject(
            CallTimeoutError(
                f"No reply to {self.operation.value} within the call deadline"
            )
        ):
            LOGGER.warning(
                "%s call %s timed out waiting on %s",
                self.operation.value,
                self.correlation_id,
                self.reply_channel,
            )


def _transport_error(exc: Exception) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    error = TransportError(str(exc))
    error.__cause__ = exc
    return error


class ThingClient:
    """Awaitable thing-management operations over a :class:`MessageBus`.

    Usage::

        async with ThingClient(token, MQTTMessageBus(config.broker)) as client:
            await client.register("abc123", "my-device")
            await client.publish_data("abc123", [DataSample(0, True)])
    """

    def __init__(
        self,
        token: str,
        bus: MessageBus,
        router: Optional[OperationRouter] = None,
        *,
        reply_timeout: Optional[float] = None,
    ) -> None:
        self.token = token
        self.reply_timeout = reply_timeout
        self._bus = bus
        self._router = router or OperationRouter()
        self._pending: Dict[str, PendingCall] = {}

        register_disconnect = getattr(bus, "register_disconnect_handler", None)
        if register_disconnect is not None:
            register_disconnect(self._on_connection_lost)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self._bus.start()

    async def close(self) -> None:
        """Fail every in-flight call and stop the bus."""

        for call in list(self._pending.values()):
            call.reject(TransportError("client closed"))
        await self._bus.stop()

    async def __aenter__(self) -> "ThingClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _on_connection_lost(self, rc: int) -> None:
        inflight = [call for call in self._pending.values() if not call.done]
        if not inflight:
            return
        LOGGER.warning(
            "Broker connection lost (rc=%s), failing %d pending call(s)",
            rc,
            len(inflight),
        )
        for call in inflight:
            call.reject(TransportError(f"Connection to broker lost (rc={rc})"))

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def register(
        self, device_id: str, name: str, *, timeout: Timeout = DEFAULT_TIMEOUT
    ) -> Any:
        return await self._call(
            Operation.REGISTER, {"deviceId": device_id, "name": name}, timeout
        )

    async def unregister(
        self, device_id: str, *, timeout: Timeout = DEFAULT_TIMEOUT
    ) -> Any:
        return await self._call(Operation.UNREGISTER, {"deviceId": device_id}, timeout)

    async def auth_device(
        self, device_id: str, *, timeout: Timeout = DEFAULT_TIMEOUT
    ) -> Any:
        return await self._call(
            Operation.AUTH_DEVICE, {"deviceId": device_id}, timeout
        )

    async def get_devices(self, *, timeout: Timeout = DEFAULT_TIMEOUT) -> Any:
        return await self._call(Operation.GET_DEVICES, {}, timeout)

    async def update_schema(
        self,
        device_id: str,
        schema: Iterable[SchemaEntry],
        *,
        timeout: Timeout = DEFAULT_TIMEOUT,
    ) -> Any:
        body = {"deviceId": device_id, "schema": serialize_schema(schema)}
        return await self._call(Operation.UPDATE_SCHEMA, body, timeout)

    async def publish_data(
        self, device_id: str, samples: Iterable[SampleEntry]
    ) -> None:
        """Publish telemetry without waiting for any reply."""

        channels = self._router.resolve_channels(Operation.PUBLISH_DATA)
        body = {"deviceId": device_id, "data": serialize_samples(samples)}
        try:
            await self._bus.publish_message(
                channels.request_channel, body, headers=self._headers()
            )
        except TransportError as exc:
            LOGGER.warning("Failed to publish data for %s: %s", device_id, exc)
            raise
        except Exception as exc:
            LOGGER.warning("Failed to publish data for %s: %s", device_id, exc)
            raise TransportError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------
    async def _call(
        self, operation: Operation, body: Mapping[str, Any], timeout: Timeout
    ) -> Any:
        channels = self._router.resolve_channels(operation)
        if channels.reply_channel is None:
            raise ValueError(f"Operation {operation.value} has no reply channel")

        loop = asyncio.get_running_loop()
        correlation_id = uuid.uuid4().hex
        call = PendingCall(
            operation=operation,
            correlation_id=correlation_id,
            reply_channel=f"{channels.reply_channel}/{correlation_id}",
            future=loop.create_future(),
        )

        if timeout is DEFAULT_TIMEOUT:
            timeout = self.reply_timeout
        if timeout is not None:
            call.deadline = loop.time() + timeout
            call.timer = loop.call_at(call.deadline, call.expire)

        self._pending[correlation_id] = call
        try:
            await self._subscribe(call)
            if not call.done:
                await self._publish(call, channels.request_channel, body)
            return await call.future
        finally:
            self._pending.pop(correlation_id, None)
            await self._release(call)

    async def _subscribe(self, call: PendingCall) -> None:
        call.state = CallState.SUBSCRIBING
        try:
            call.handle = await self._bus.subscribe_to(
                call.reply_channel, partial(self._on_delivery, call)
            )
        except Exception as exc:
            LOGGER.warning(
                "Failed to subscribe for %s reply on %s: %s",
                call.operation.value,
                call.reply_channel,
                exc,
            )
            call.reject(_transport_error(exc))

    async def _publish(
        self, call: PendingCall, channel: str, body: Mapping[str, Any]
    ) -> None:
        headers = self._headers(
            {
                constants.REPLY_TO_HEADER: call.reply_channel,
                constants.CORRELATION_ID_HEADER: call.correlation_id,
            }
        )
        call.state = CallState.PUBLISHED
        try:
            await self._bus.publish_message(channel, body, headers=headers)
        except Exception as exc:
            LOGGER.warning(
                "Failed to publish %s request on %s: %s",
                call.operation.value,
                channel,
                exc,
            )
            call.reject(_transport_error(exc))
            return

        if not call.done:
            call.state = CallState.AWAITING_REPLY
            LOGGER.debug(
                "Published %s request %s, awaiting reply on %s",
                call.operation.value,
                call.correlation_id,
                call.reply_channel,
            )

    def _on_delivery(self, call: PendingCall, payload: Any) -> None:
        if call.done:
            LOGGER.debug(
                "Ignoring late reply for %s call %s",
                call.operation.value,
                call.correlation_id,
            )
            return

        outcome = classify_reply(payload)
        if outcome.ok:
            call.resolve(outcome.payload)
            return

        LOGGER.info(
            "%s call %s failed remotely: %s",
            call.operation.value,
            call.correlation_id,
            outcome.error,
        )
        call.reject(
            RemoteError(
                outcome.error or "",
                operation=call.operation.value,
                reply=payload if isinstance(payload, Mapping) else None,
            )
        )

    async def _release(self, call: PendingCall) -> None:
        if call.timer is not None:
            call.timer.cancel()
            call.timer = None

        handle, call.handle = call.handle, None
        if handle is None:
            return

        try:
            await self._bus.unsubscribe_consumer(handle)
        except Exception as exc:
            LOGGER.warning(
                "Failed to unsubscribe %s consumer from %s: %s",
                call.operation.value,
                handle.channel,
                exc,
            )

    def _headers(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {constants.AUTHORIZATION_HEADER: self.token}
        if extra:
            headers.update(extra)
        return headers


def create_client(config: ThingbusConfig) -> ThingClient:
    """Build a client wired to an MQTT bus from a loaded configuration."""

    if not config.client.token:
        raise ValueError("client.token must be configured")

    return ThingClient(
        config.client.token,
        MQTTMessageBus(config.broker),
        OperationRouter(config.client.channel_prefix),
        reply_timeout=config.client.reply_timeout_seconds,
    )
