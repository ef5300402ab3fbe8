from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from telemetrycache._mqtt import MqttMessagingClient, message_from_mqtt, parse_broker
from telemetrycache._source import StartPosition
from telemetrycache.config import TelemetryConfig
from telemetrycache.exceptions import ConfigError, ConnectError, ReceiveError
from telemetrycache.models import ReceivedMessage


@dataclass
class FakePahoClient:
    subscribe_result: int = mqtt.MQTT_ERR_SUCCESS
    callbacks: dict[str, Any] = field(default_factory=dict)
    subscribed: list[str] = field(default_factory=list)
    unsubscribed: list[str] = field(default_factory=list)
    disconnected: bool = False
    loop_stopped: bool = False
    next_mid: int = 1
    on_subscribe: Any = None
    on_disconnect: Any = None

    def message_callback_add(self, sub: str, callback: Any) -> None:
        self.callbacks[sub] = callback

    def message_callback_remove(self, sub: str) -> None:
        self.callbacks.pop(sub, None)

    def subscribe(self, topic: str, qos: int = 0) -> tuple[int, int]:
        mid = self.next_mid
        self.next_mid += 1
        if self.subscribe_result == mqtt.MQTT_ERR_SUCCESS:
            self.subscribed.append(topic)
        return self.subscribe_result, mid

    def unsubscribe(self, topic: str) -> tuple[int, int]:
        self.unsubscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, 0

    def disconnect(self) -> int:
        self.disconnected = True
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self) -> int:
        self.loop_stopped = True
        return mqtt.MQTT_ERR_SUCCESS

    def publish(self, topic: str, payload: bytes, *, retain: bool = False) -> None:
        msg = mqtt.MQTTMessage(topic=topic.encode())
        msg.payload = payload
        msg.retain = retain
        self.callbacks[topic](self, None, msg)


def _position() -> StartPosition:
    return StartPosition.from_enqueued_time(datetime(2000, 1, 1, tzinfo=UTC))


async def _client(paho: FakePahoClient, topics: tuple[str, ...] = ("sensors/a", "sensors/b")) -> MqttMessagingClient:
    return MqttMessagingClient(loop=asyncio.get_running_loop(), client=paho, topics=topics)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("raw", "tls", "expected"),
    [
        ("broker.local", False, ("broker.local", 1883, False)),
        ("broker.local", True, ("broker.local", 8883, True)),
        ("broker.local:1884", False, ("broker.local", 1884, False)),
        ("mqtts://broker.local", False, ("broker.local", 8883, True)),
        ("mqtt://broker.local:1885/ignored/path", False, ("broker.local", 1885, False)),
    ],
)
def test_parse_broker(raw: str, tls: bool, expected: tuple[str, int, bool]) -> None:
    broker = parse_broker(raw, tls=tls)
    assert (broker.host, broker.port, broker.tls) == expected


def test_parse_broker_rejects_empty() -> None:
    with pytest.raises(ConfigError):
        parse_broker("  ")


def test_message_from_mqtt_decodes_payload_and_properties() -> None:
    msg = mqtt.MQTTMessage(topic=b"devices/sensor-1/messages/events/")
    msg.payload = b'{"temperature": 21.5, "humidity": 40}'
    msg.qos = 1
    props = Properties(PacketTypes.PUBLISH)
    props.UserProperty = ("temperatureAlert", "false")
    msg.properties = props
    received_at = datetime(2026, 1, 1, tzinfo=UTC)

    message = message_from_mqtt("devices/+/messages/events/#", msg, received_at=received_at)

    assert message.partition_id == "devices/+/messages/events/#"
    assert message.body == {"temperature": 21.5, "humidity": 40}
    assert message.application_properties == {"temperatureAlert": "false"}
    assert message.annotations == {"topic": "devices/sensor-1/messages/events/", "qos": 1, "retain": False}
    assert message.enqueued_time == received_at


def test_message_from_mqtt_keeps_non_json_payloads() -> None:
    text = mqtt.MQTTMessage(topic=b"t")
    text.payload = b"21.5C"
    binary = mqtt.MQTTMessage(topic=b"t")
    binary.payload = b"\xff\x00"

    assert message_from_mqtt("t", text).body == "21.5C"
    assert message_from_mqtt("t", binary).body == b"\xff\x00"


@pytest.mark.asyncio
async def test_partitions_are_the_configured_topics() -> None:
    client = await _client(FakePahoClient())

    assert await client.list_partitions() == ["sensors/a", "sensors/b"]


@pytest.mark.asyncio
async def test_messages_are_handed_to_the_loop() -> None:
    paho = FakePahoClient()
    client = await _client(paho)
    received: list[ReceivedMessage] = []

    await client.receive("sensors/a", received.append, pytest.fail, position=_position())
    paho.publish("sensors/a", b'{"temperature": 20}')
    paho.publish("sensors/a", b'{"temperature": 10}', retain=True)

    assert received == []
    await asyncio.sleep(0)

    assert [m.body for m in received] == [{"temperature": 20}]
    assert paho.subscribed == ["sensors/a"]


@pytest.mark.asyncio
async def test_messages_before_start_position_are_dropped() -> None:
    client = await _client(FakePahoClient())
    received: list[ReceivedMessage] = []
    position = StartPosition.from_enqueued_time(datetime(2026, 6, 1, tzinfo=UTC))

    subscription = await client.receive("sensors/a", received.append, pytest.fail, position=position)
    subscription.deliver(
        ReceivedMessage(partition_id="sensors/a", body=1, enqueued_time=datetime(2026, 5, 31, tzinfo=UTC))
    )
    subscription.deliver(
        ReceivedMessage(partition_id="sensors/a", body=2, enqueued_time=datetime(2026, 6, 1, tzinfo=UTC))
    )

    assert [m.body for m in received] == [2]


@pytest.mark.asyncio
async def test_refused_subscription_reports_error() -> None:
    paho = FakePahoClient()
    client = await _client(paho)
    errors: list[Exception] = []

    await client.receive("sensors/a", pytest.fail, errors.append, position=_position())
    assert paho.on_subscribe is not None
    paho.on_subscribe(paho, None, 1, [SimpleNamespace(is_failure=True)], None)
    await asyncio.sleep(0)

    assert len(errors) == 1
    assert isinstance(errors[0], ReceiveError)
    assert errors[0].partition_id == "sensors/a"


@pytest.mark.asyncio
async def test_subscribe_call_failure_raises() -> None:
    client = await _client(FakePahoClient(subscribe_result=mqtt.MQTT_ERR_NO_CONN))

    with pytest.raises(ReceiveError):
        await client.receive("sensors/a", pytest.fail, pytest.fail, position=_position())


@pytest.mark.asyncio
async def test_connection_loss_fails_every_subscription() -> None:
    paho = FakePahoClient()
    client = await _client(paho)
    errors: list[Exception] = []

    await client.receive("sensors/a", pytest.fail, errors.append, position=_position())
    await client.receive("sensors/b", pytest.fail, errors.append, position=_position())
    paho.on_disconnect(paho, None, None, "unspecified error", None)
    await asyncio.sleep(0)

    assert sorted(e.partition_id for e in errors if isinstance(e, ReceiveError)) == ["sensors/a", "sensors/b"]


@pytest.mark.asyncio
async def test_cancel_unsubscribes_one_topic() -> None:
    paho = FakePahoClient()
    client = await _client(paho)
    received: list[ReceivedMessage] = []

    first = await client.receive("sensors/a", received.append, pytest.fail, position=_position())
    await client.receive("sensors/b", received.append, pytest.fail, position=_position())
    first.cancel()
    paho.publish("sensors/b", b"1")
    await asyncio.sleep(0)

    assert first.is_active is False
    assert paho.unsubscribed == ["sensors/a"]
    assert "sensors/a" not in paho.callbacks
    assert [m.partition_id for m in received] == ["sensors/b"]


@pytest.mark.asyncio
async def test_close_disconnects_and_stops_network_loop() -> None:
    paho = FakePahoClient()
    client = await _client(paho)
    subscription = await client.receive("sensors/a", pytest.fail, pytest.fail, position=_position())

    await client.close()

    assert subscription.is_active is False
    assert paho.disconnected is True
    assert paho.loop_stopped is True
    # Disconnect during close is expected and not reported as an error.
    paho.on_disconnect(paho, None, None, "normal disconnection", None)
    await asyncio.sleep(0)


class SilentPahoClient:
    """paho stand-in whose broker never accepts the connection."""

    def __init__(self, **_kwargs: Any) -> None:
        self.on_connect: Any = None
        self.connected_to: tuple[str, int, int] | None = None
        self.disconnected = False
        self.loop_stopped = False

    def enable_logger(self, _logger: Any) -> None:
        pass

    def username_pw_set(self, _username: str, _password: str | None) -> None:
        pass

    def tls_set(self) -> None:
        pass

    def connect(self, host: str, port: int, keepalive: int) -> int:
        self.connected_to = (host, port, keepalive)
        return mqtt.MQTT_ERR_SUCCESS

    def loop_start(self) -> int:
        return mqtt.MQTT_ERR_SUCCESS

    def disconnect(self) -> int:
        self.disconnected = True
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self) -> int:
        self.loop_stopped = True
        return mqtt.MQTT_ERR_SUCCESS


class RefusingPahoClient(SilentPahoClient):
    def loop_start(self) -> int:
        self.on_connect(self, None, None, SimpleNamespace(is_failure=True), None)
        return mqtt.MQTT_ERR_SUCCESS


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("client_cls", "keepalive", "message"),
    [
        (RefusingPahoClient, 60, "refused"),
        (SilentPahoClient, 0.01, "Timed out"),
    ],
)
async def test_failed_connect_releases_socket_and_network_loop(
    monkeypatch: pytest.MonkeyPatch,
    client_cls: type[SilentPahoClient],
    keepalive: float,
    message: str,
) -> None:
    created: list[SilentPahoClient] = []

    def factory(**kwargs: Any) -> SilentPahoClient:
        client = client_cls(**kwargs)
        created.append(client)
        return client

    monkeypatch.setattr(mqtt, "Client", factory)
    config = TelemetryConfig(transport="mqtt", mqtt_broker="broker.local", mqtt_keepalive=keepalive)  # type: ignore[arg-type]

    with pytest.raises(ConnectError, match=message):
        await MqttMessagingClient.connect(config)

    assert created[0].connected_to == ("broker.local", 1883, keepalive)
    assert created[0].disconnected is True
    assert created[0].loop_stopped is True
