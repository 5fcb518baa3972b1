"""Tests for the MQTT message bus."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from thingbus import constants
from thingbus.adapters import MQTTConnectionError, MQTTMessageBus
from thingbus.client import ThingClient
from thingbus.config import BrokerConfig
from thingbus.errors import TransportError

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCodes


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        suback_codes=(1,),
        ack: bool = True,
        **unused,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        self._suback_codes = list(suback_codes)
        self._ack = ack
        self._mid = 0

        self._events["client_kwargs"] = unused

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_subscribe = None
        self.on_unsubscribe = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def tls_set(self):
        self._events["tls"] = True

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect,
                self,
                None,
                None,
                self._rc_connect,
                None,
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect,
                self,
                None,
                self._rc_disconnect,
                None,
            )

    def publish(self, topic, payload, qos=0, retain=False, properties=None):
        self._events.setdefault("published", []).append(
            (topic, payload, qos, retain, properties)
        )
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        self._mid += 1
        if self._ack and self.on_subscribe:
            self._loop.call_soon(
                self.on_subscribe, self, None, self._mid, self._suback_codes, None
            )
        return self._subscribe_rc, self._mid

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        self._mid += 1
        if self._ack and self.on_unsubscribe:
            # paho hands over a single ReasonCodes when one topic is unsubscribed.
            success = ReasonCodes(PacketTypes.UNSUBACK, identifier=0)
            self._loop.call_soon(
                self.on_unsubscribe, self, None, self._mid, None, success
            )
        return mqtt.MQTT_ERR_SUCCESS, self._mid

    # test helpers ---------------------------------------------------
    def drop_connection(self, rc: int) -> None:
        self.on_disconnect(self, None, rc, None)

    def acknowledge_subscribe(self, mid: int, codes=(1,)) -> None:
        self.on_subscribe(self, None, mid, list(codes), None)


def _install(monkeypatch, events: dict, **options):
    loop = asyncio.get_running_loop()

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, *args, **options, **kwargs)

    monkeypatch.setattr("thingbus.adapters.mqtt.mqtt.Client", factory)


def _config(**overrides) -> BrokerConfig:
    values = dict(
        host="broker.things.dev",
        port=1883,
        username="tenant:device",
        password="token",
        connect_timeout_seconds=1.0,
        ack_timeout_seconds=0.1,
    )
    values.update(overrides)
    return BrokerConfig(**values)


@pytest_asyncio.fixture
async def message_bus(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events)

    bus = MQTTMessageBus(_config(), client_id="thing-42")
    await bus.start()

    yield bus, events

    await bus.stop()


@pytest.mark.asyncio
async def test_start_configures_client(message_bus):
    bus, events = message_bus

    assert events["connect_args"] == ("broker.things.dev", 1883, 60)
    assert events["auth"] == ("tenant:device", "token")
    assert events["loop_start"] == 1
    assert events["client_kwargs"]["client_id"] == "thing-42"
    assert events["client_kwargs"]["protocol"] == mqtt.MQTTv5
    assert "tls" not in events
    assert bus.is_connected()


@pytest.mark.asyncio
async def test_start_enables_tls_when_configured(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events)

    bus = MQTTMessageBus(_config(use_tls=True))
    await bus.start()
    await bus.stop()

    assert events["tls"] is True


@pytest.mark.asyncio
async def test_publish_encodes_json_and_headers(message_bus):
    bus, events = message_bus

    await bus.publish_message(
        "thingbus/device/register",
        {"deviceId": "abc", "name": "thing"},
        headers={
            constants.AUTHORIZATION_HEADER: "secret",
            constants.REPLY_TO_HEADER: "thingbus/device/registered/c1",
            constants.CORRELATION_ID_HEADER: "c1",
        },
    )

    (topic, payload, qos, retain, properties) = events["published"][0]
    assert topic == "thingbus/device/register"
    assert payload == b'{"deviceId": "abc", "name": "thing"}'
    assert (qos, retain) == (1, False)
    assert properties.ResponseTopic == "thingbus/device/registered/c1"
    assert properties.CorrelationData == b"c1"
    assert ("Authorization", "secret") in properties.UserProperty


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, publish_rc=mqtt.MQTT_ERR_NO_CONN)

    bus = MQTTMessageBus(_config())
    await bus.start()

    with pytest.raises(MQTTConnectionError):
        await bus.publish_message("test", {"a": 1})

    await bus.stop()


@pytest.mark.asyncio
async def test_publish_without_connection_is_transport_error():
    bus = MQTTMessageBus(_config())

    with pytest.raises(TransportError):
        await bus.publish_message("test", {})


@pytest.mark.asyncio
async def test_subscribe_waits_for_suback_and_dispatches(message_bus):
    bus, events = message_bus
    received = []

    handle = await bus.subscribe_to("replies/c1", received.append)

    assert events["subscribed"] == [("replies/c1", 1)]
    assert handle.channel == "replies/c1"

    message = SimpleNamespace(topic="replies/c1", payload=b'{"id": "abc"}')
    bus._on_message(bus._client, None, message)  # type: ignore[arg-type]
    other = SimpleNamespace(topic="replies/other", payload=b'{"id": "zzz"}')
    bus._on_message(bus._client, None, other)  # type: ignore[arg-type]
    await asyncio.sleep(0)

    assert received == [{"id": "abc"}]


@pytest.mark.asyncio
async def test_undecodable_message_is_dropped(message_bus):
    bus, _ = message_bus
    received = []

    await bus.subscribe_to("replies/c2", received.append)
    message = SimpleNamespace(topic="replies/c2", payload=b"\xff not json")
    bus._on_message(bus._client, None, message)  # type: ignore[arg-type]
    await asyncio.sleep(0)

    assert received == []


@pytest.mark.asyncio
async def test_subscribe_refused_by_broker(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, suback_codes=(0x87,))

    bus = MQTTMessageBus(_config())
    await bus.start()

    with pytest.raises(MQTTConnectionError):
        await bus.subscribe_to("replies/c3", lambda payload: None)

    assert bus._subscriptions == {}
    await bus.stop()


@pytest.mark.asyncio
async def test_subscribe_rc_failure_raises(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, subscribe_rc=mqtt.MQTT_ERR_NO_CONN)

    bus = MQTTMessageBus(_config())
    await bus.start()

    with pytest.raises(MQTTConnectionError):
        await bus.subscribe_to("replies/c4", lambda payload: None)

    await bus.stop()


@pytest.mark.asyncio
async def test_subscribe_times_out_without_suback(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, ack=False)

    bus = MQTTMessageBus(_config(ack_timeout_seconds=0.01))
    await bus.start()

    with pytest.raises(MQTTConnectionError, match="SUBACK"):
        await bus.subscribe_to("replies/c5", lambda payload: None)

    assert bus._pending_acks == {}
    await bus.stop()


@pytest.mark.asyncio
async def test_unsubscribe_releases_topic_after_last_consumer(message_bus):
    bus, events = message_bus

    first = await bus.subscribe_to("replies/shared", lambda payload: None)
    second = await bus.subscribe_to("replies/shared", lambda payload: None)
    assert events["subscribed"] == [("replies/shared", 1)]

    await bus.unsubscribe_consumer(first)
    assert "unsubscribed" not in events

    await bus.unsubscribe_consumer(second)
    assert events["unsubscribed"] == ["replies/shared"]
    assert bus._subscriptions == {}


@pytest.mark.asyncio
async def test_stop_disconnects(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events)

    bus = MQTTMessageBus(_config())
    await bus.start()
    await bus.stop()

    assert events["disconnect_called"] is True
    assert events["loop_stop"] == 1
    assert not bus.is_connected()


@pytest.mark.asyncio
async def test_connect_failure_raises(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, rc_connect=5)

    bus = MQTTMessageBus(_config())

    with pytest.raises(MQTTConnectionError):
        await bus.start()

    assert events["loop_stop"] == 1


@pytest.mark.asyncio
async def test_unsubscribe_completes_with_single_reason_code(message_bus):
    bus, events = message_bus

    handle = await bus.subscribe_to("replies/solo", lambda payload: None)
    await asyncio.wait_for(bus.unsubscribe_consumer(handle), timeout=1.0)

    assert events["unsubscribed"] == ["replies/solo"]
    assert bus._pending_acks == {}


@pytest.mark.asyncio
async def test_unsuback_reason_code_object_resolves_ack(message_bus):
    bus, _ = message_bus
    loop = asyncio.get_running_loop()
    ack = loop.create_future()
    bus._pending_acks[99] = ack

    bus._on_unsubscribe(
        bus._client, None, 99, None, ReasonCodes(PacketTypes.UNSUBACK, identifier=0)
    )

    assert await asyncio.wait_for(ack, timeout=1.0) == [0]


@pytest.mark.asyncio
async def test_connection_loss_fails_pending_suback_and_notifies(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, ack=False)

    bus = MQTTMessageBus(_config(ack_timeout_seconds=5.0))
    lost = []
    bus.register_disconnect_handler(lost.append)
    await bus.start()

    task = asyncio.create_task(bus.subscribe_to("replies/c6", lambda payload: None))
    await asyncio.sleep(0)
    assert bus._pending_acks

    bus._client.drop_connection(7)

    with pytest.raises(MQTTConnectionError, match="lost"):
        await asyncio.wait_for(task, timeout=1.0)
    assert lost == [7]
    assert bus._subscriptions == {}
    assert not bus.is_connected()

    await bus.stop()


@pytest.mark.asyncio
async def test_connection_loss_fails_call_awaiting_reply(message_bus):
    bus, events = message_bus
    client = ThingClient("token", bus)

    task = asyncio.create_task(client.register("abc123", "thing"))
    for _ in range(50):
        if events.get("published"):
            break
        await asyncio.sleep(0)
    assert events.get("published")

    bus._client.drop_connection(7)

    with pytest.raises(TransportError, match="lost"):
        await asyncio.wait_for(task, timeout=1.0)
    assert client.pending_calls == 0
    assert "unsubscribed" not in events


@pytest.mark.asyncio
async def test_concurrent_subscribers_wait_for_shared_suback(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, ack=False)

    bus = MQTTMessageBus(_config(ack_timeout_seconds=5.0))
    await bus.start()

    first = asyncio.create_task(bus.subscribe_to("replies/pair", lambda payload: None))
    second = asyncio.create_task(bus.subscribe_to("replies/pair", lambda payload: None))
    for _ in range(5):
        await asyncio.sleep(0)

    assert events["subscribed"] == [("replies/pair", 1)]
    assert not first.done()
    assert not second.done()

    bus._client.acknowledge_subscribe(1)
    handles = await asyncio.wait_for(asyncio.gather(first, second), timeout=1.0)

    assert {handle.channel for handle in handles} == {"replies/pair"}
    assert len(bus._subscriptions["replies/pair"].consumers) == 2
    await bus.stop()


@pytest.mark.asyncio
async def test_concurrent_subscribers_share_refused_suback(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, suback_codes=(0x87,))

    bus = MQTTMessageBus(_config())
    await bus.start()

    results = await asyncio.gather(
        bus.subscribe_to("replies/denied", lambda payload: None),
        bus.subscribe_to("replies/denied", lambda payload: None),
        return_exceptions=True,
    )

    assert all(isinstance(result, MQTTConnectionError) for result in results)
    assert events["subscribed"] == [("replies/denied", 1)]
    assert bus._subscriptions == {}
    await bus.stop()
