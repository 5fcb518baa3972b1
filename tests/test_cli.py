"""Tests for the command line front-end."""

import json
from pathlib import Path

import pytest

from thingbus import cli
from thingbus.client import ThingClient
from thingbus.core import ConsumerHandle, DataSample
from thingbus.errors import TransportError


class RecordingBus:
    def __init__(self, reply=None, publish_err=None) -> None:
        self.reply = reply
        self.publish_err = publish_err
        self.published = []
        self.started = False
        self.stopped = False
        self._callback = None

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def subscribe_to(self, channel, on_delivery):
        self._callback = on_delivery
        return ConsumerHandle(channel=channel, consumer_tag="cli")

    async def publish_message(self, channel, payload, *, headers=None):
        self.published.append((channel, payload))
        if self.publish_err:
            raise TransportError(self.publish_err)
        if self._callback is not None and self.reply is not None:
            self._callback(self.reply)

    async def unsubscribe_consumer(self, handle):
        self._callback = None


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _factory(bus):
    return lambda config: ThingClient("token", bus)


def test_register_prints_reply(tmp_path: Path, capsys):
    bus = RecordingBus(reply={"id": "abc123"})

    code = cli.main(
        ["-c", str(tmp_path / "missing.cfg"), "register", "abc123", "my-device"],
        client_factory=_factory(bus),
    )

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"id": "abc123"}
    assert bus.published[0] == (
        "thingbus/device/register",
        {"deviceId": "abc123", "name": "my-device"},
    )
    assert bus.started and bus.stopped


def test_remote_error_exits_non_zero(tmp_path: Path):
    bus = RecordingBus(reply={"devices": [], "error": "error listing registered things"})

    code = cli.main(
        ["-c", str(tmp_path / "missing.cfg"), "list"], client_factory=_factory(bus)
    )

    assert code == 1
    assert bus.stopped


def test_publish_parses_samples(tmp_path: Path):
    bus = RecordingBus()

    code = cli.main(
        ["-c", str(tmp_path / "missing.cfg"), "publish", "abc", "0=true", "1=21.5", "2=on"],
        client_factory=_factory(bus),
    )

    assert code == 0
    assert bus.published[0][1]["data"] == [
        {"sensorId": 0, "value": True},
        {"sensorId": 1, "value": 21.5},
        {"sensorId": 2, "value": "on"},
    ]


def test_update_schema_reads_file(tmp_path: Path, capsys):
    schema = [{"sensorId": 0, "typeId": 65521, "valueType": 3, "unit": 0, "name": "bool"}]
    schema_file = tmp_path / "schema.json"
    schema_file.write_text(json.dumps(schema), encoding="utf-8")
    bus = RecordingBus(reply={"id": "abc", "schema": schema})

    code = cli.main(
        ["-c", str(tmp_path / "missing.cfg"), "update-schema", "abc", str(schema_file)],
        client_factory=_factory(bus),
    )

    assert code == 0
    assert bus.published[0][1] == {"deviceId": "abc", "schema": schema}
    assert json.loads(capsys.readouterr().out)["schema"] == schema


def test_missing_token_fails(tmp_path: Path):
    code = cli.main(["-c", str(tmp_path / "missing.cfg"), "auth", "abc"])

    assert code == 1


def test_show_config(tmp_path: Path, capsys):
    code = cli.main(["-c", str(tmp_path / "missing.cfg"), "show-config"])

    output = capsys.readouterr().out
    assert code == 0
    assert "[broker]" in output
    assert "channel_prefix = thingbus" in output


def test_parse_sample_rejects_malformed_input():
    with pytest.raises(ValueError):
        cli.parse_sample("no-equals-sign")

    assert cli.parse_sample("4=false") == DataSample(sensor_id=4, value=False)
