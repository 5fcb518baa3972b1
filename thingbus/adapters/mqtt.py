"""MQTT message bus encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from .. import constants
from ..config import BrokerConfig
from ..core.protocols import ConsumerHandle, DeliveryCallback
from ..errors import TransportError

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = LOGGER.getChild("paho")

# MQTT v5 reason codes at or above 0x80 signal failure.
_REASON_FAILURE = 0x80


class MQTTConnectionError(TransportError):
    """Raised when the MQTT client fails to talk to the broker."""


@dataclass(slots=True)
class _ChannelSubscription:
    """Consumers sharing one broker subscription.

    ``ready`` is set once the SUBACK outcome is known; ``error`` holds the
    failure when the subscription was not accepted.
    """

    consumers: Dict[str, DeliveryCallback] = field(default_factory=dict)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    error: Optional[BaseException] = None


class MQTTMessageBus:
    """Async-friendly message bus over the threaded paho-mqtt client.

    paho runs its network loop on a background thread; every callback is
    handed back to the event loop with ``call_soon_threadsafe`` so consumers,
    acknowledgements and connection state are only touched from the loop.
    """

    def __init__(self, config: BrokerConfig, *, client_id: Optional[str] = None) -> None:
        self.config = config
        self.client_id = client_id or config.client_id or ""

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._subscriptions: Dict[str, _ChannelSubscription] = {}
        self._pending_acks: Dict[int, asyncio.Future[List[int]]] = {}
        self._consumer_tags = itertools.count(1)
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def start(self) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(client_id=self.client_id, protocol=mqtt.MQTTv5)
        client.enable_logger(PAHO_LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.use_tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )

        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(
                self._connected_event.wait(),
                timeout=self.config.connect_timeout_seconds,
            )
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def stop(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected = False
            self._subscriptions.clear()
            self._fail_pending_acks(MQTTConnectionError("MQTT client stopped"))

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        """Call ``handler(rc)`` on the event loop whenever the connection drops."""

        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    async def publish_message(
        self,
        channel: str,
        payload: Mapping[str, Any],
        *,
        headers: Optional[Mapping[str, str]] = None,
        qos: int = 1,
    ) -> None:
        client = self._require_client()

        payload_bytes = json.dumps(payload).encode("utf-8")
        properties = _build_properties(headers or {})

        info = client.publish(
            channel, payload_bytes, qos=qos, retain=False, properties=properties
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        LOGGER.debug("Published %d bytes to %s", len(payload_bytes), channel)

    async def subscribe_to(
        self, channel: str, on_delivery: DeliveryCallback, *, qos: int = 1
    ) -> ConsumerHandle:
        client = self._require_client()

        handle = ConsumerHandle(
            channel=channel, consumer_tag=f"consumer-{next(self._consumer_tags)}"
        )
        subscription = self._subscriptions.get(channel)
        if subscription is not None:
            # Another consumer owns the SUBACK for this channel; share its outcome.
            subscription.consumers[handle.consumer_tag] = on_delivery
            try:
                await subscription.ready.wait()
            except BaseException:
                subscription.consumers.pop(handle.consumer_tag, None)
                raise
            if subscription.error is not None:
                raise MQTTConnectionError(
                    f"Subscription to {channel} failed: {subscription.error}"
                )
            LOGGER.debug("Attached %s to %s", handle.consumer_tag, channel)
            return handle

        subscription = _ChannelSubscription()
        subscription.consumers[handle.consumer_tag] = on_delivery
        self._subscriptions[channel] = subscription

        try:
            result, mid = client.subscribe(channel, qos=qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise MQTTConnectionError(f"Subscribe failed with rc={result}")
            codes = await self._await_ack(mid, "SUBACK")
            if any(code >= _REASON_FAILURE for code in codes):
                raise MQTTConnectionError(
                    f"Broker refused subscription to {channel} (reason={codes})"
                )
        except BaseException as exc:
            if self._subscriptions.get(channel) is subscription:
                del self._subscriptions[channel]
            subscription.consumers.clear()
            subscription.error = exc
            subscription.ready.set()
            raise
        subscription.ready.set()

        LOGGER.debug("Subscribed %s to %s", handle.consumer_tag, channel)
        return handle

    async def unsubscribe_consumer(self, handle: ConsumerHandle) -> None:
        subscription = self._subscriptions.get(handle.channel)
        if subscription is None:
            return
        if subscription.consumers.pop(handle.consumer_tag, None) is None:
            return
        if subscription.consumers:
            return
        del self._subscriptions[handle.channel]

        client = self._require_client()
        result, mid = client.unsubscribe(handle.channel)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")
        await self._await_ack(mid, "UNSUBACK")
        LOGGER.debug("Unsubscribed %s from %s", handle.consumer_tag, handle.channel)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_client(self) -> mqtt.Client:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        return self._client

    async def _await_ack(self, mid: int, kind: str) -> List[int]:
        assert self._loop is not None
        future: asyncio.Future[List[int]] = self._loop.create_future()
        self._pending_acks[mid] = future
        try:
            return await asyncio.wait_for(
                future, timeout=self.config.ack_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out waiting for {kind} (mid={mid})"
            ) from exc
        finally:
            self._pending_acks.pop(mid, None)

    def _resolve_ack(self, mid: int, codes: List[int]) -> None:
        future = self._pending_acks.get(mid)
        if future is None or future.done():
            return
        future.set_result(codes)

    def _fail_pending_acks(self, exc: Exception) -> None:
        for future in self._pending_acks.values():
            if not future.done():
                future.set_exception(exc)
        self._pending_acks.clear()

    def _connection_lost(self, rc: int) -> None:
        """Drop broker-side state and tell listeners the connection is gone."""

        if self._disconnect_event:
            self._disconnect_event.set()

        # The broker forgets non-persistent subscriptions with the session.
        self._subscriptions.clear()
        self._fail_pending_acks(
            MQTTConnectionError(f"Connection to MQTT broker lost (rc={rc})")
        )

        for handler in list(self._disconnect_handlers):
            try:
                handler(rc)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Disconnect handler %r raised an exception", handler)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        subscription = self._subscriptions.get(topic)
        if subscription is None or not subscription.consumers:
            LOGGER.debug("Dropping message on %s without consumers", topic)
            return

        try:
            document = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.warning("Discarding undecodable message on %s: %s", topic, exc)
            return

        for consumer_tag, callback in list(subscription.consumers.items()):
            try:
                callback(document)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception(
                    "Consumer %s on %s raised an exception", consumer_tag, topic
                )

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, rc, properties=None
    ) -> None:
        code = _reason_value(rc)
        self._last_connect_rc = code
        if code == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", code)
            self._connected = False
        if self._loop and self._connected_event:
            self._loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(self, client: mqtt.Client, userdata, rc, properties=None) -> None:
        code = _reason_value(rc)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", code)
        self._connected = False
        if self._loop:
            self._loop.call_soon_threadsafe(self._connection_lost, code)

    def _on_subscribe(
        self, client: mqtt.Client, userdata, mid: int, reason_codes, properties=None
    ) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(
                self._resolve_ack, mid, _reason_values(reason_codes)
            )

    def _on_unsubscribe(
        self, client: mqtt.Client, userdata, mid: int, properties=None, reason_codes=None
    ) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(
                self._resolve_ack, mid, _reason_values(reason_codes)
            )

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(
                self._dispatch, message.topic, message.payload
            )


def _reason_value(code: Any) -> int:
    return int(getattr(code, "value", code))


def _reason_values(reason_codes: Any) -> List[int]:
    """Flatten paho's ack reason codes into integers.

    paho passes a list of codes for SUBACK, but a single ``ReasonCodes`` for
    an UNSUBACK covering one topic.
    """

    if reason_codes is None:
        return []
    if not isinstance(reason_codes, (list, tuple)):
        reason_codes = [reason_codes]
    return [_reason_value(code) for code in reason_codes]


def _build_properties(headers: Mapping[str, str]) -> Properties:
    properties = Properties(PacketTypes.PUBLISH)
    user_properties = []
    for name, value in headers.items():
        if name == constants.REPLY_TO_HEADER:
            properties.ResponseTopic = value
        elif name == constants.CORRELATION_ID_HEADER:
            properties.CorrelationData = value.encode("utf-8")
        else:
            user_properties.append((name, value))
    if user_properties:
        properties.UserProperty = user_properties
    return properties
