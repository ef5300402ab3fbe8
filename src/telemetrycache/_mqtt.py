"""MQTT adapter: threaded paho-mqtt client feeding an asyncio loop.

Every configured topic filter is treated as one partition. Deliveries
happen on paho's network thread and are handed to the event loop with
``call_soon_threadsafe``, so subscription callbacks always run on the loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast

import paho.mqtt.client as mqtt

from telemetrycache._source import ErrorCallback, MessageCallback, StartPosition
from telemetrycache.config import TRANSPORT_MQTT, TelemetryConfig
from telemetrycache.exceptions import ConfigError, ConnectError, ReceiveError
from telemetrycache.models import ReceivedMessage

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MqttBroker:
    host: str
    port: int
    tls: bool


def parse_broker(raw_broker: str, *, tls: bool = False) -> MqttBroker:
    """Parse ``[mqtt[s]://]host[:port][/...]`` into a broker address."""
    value = raw_broker.strip()
    if not value:
        raise ConfigError("Broker value is empty")

    if "://" in value:
        scheme, value = value.split("://", 1)
        if scheme.lower() in {"mqtts", "ssl", "tls"}:
            tls = True
    if "/" in value:
        value = value.split("/", 1)[0]

    default_port = 8883 if tls else 1883
    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return MqttBroker(host=host, port=int(maybe_port), tls=tls)
    return MqttBroker(host=value, port=default_port, tls=tls)


def _decode_payload(payload: bytes) -> Any:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return payload
    try:
        return json.loads(text)
    except ValueError:
        return text


def message_from_mqtt(
    partition_id: str,
    msg: mqtt.MQTTMessage,
    *,
    received_at: datetime | None = None,
) -> ReceivedMessage:
    """Convert a paho message into a :class:`ReceivedMessage`.

    MQTT v5 user properties become the application properties; broker-side
    metadata (topic, QoS, retain flag) becomes the annotations.
    """
    user_properties = getattr(getattr(msg, "properties", None), "UserProperty", None) or []
    return ReceivedMessage(
        partition_id=partition_id,
        body=_decode_payload(msg.payload),
        application_properties={str(k): v for k, v in user_properties},
        annotations={"topic": msg.topic, "qos": msg.qos, "retain": bool(msg.retain)},
        enqueued_time=received_at or datetime.now(UTC),
    )


async def _abandon(loop: asyncio.AbstractEventLoop, client: mqtt.Client) -> None:
    """Close the socket and network thread of a client that never connected."""
    try:
        await loop.run_in_executor(None, client.disconnect)
    finally:
        await loop.run_in_executor(None, client.loop_stop)


class MqttSubscription:
    """A topic filter subscribed on the shared paho client."""

    def __init__(
        self,
        *,
        owner: MqttMessagingClient,
        topic: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        position: StartPosition,
    ) -> None:
        self._owner = owner
        self._topic = topic
        self._on_message = on_message
        self._on_error = on_error
        self._position = position
        self._active = True

    @property
    def partition_id(self) -> str:
        return self._topic

    @property
    def is_active(self) -> bool:
        return self._active

    def deliver(self, message: ReceivedMessage) -> None:
        """Loop-thread side of a delivery."""
        if not self._active:
            return
        if not self._position.accepts(message.enqueued_time):
            return
        self._on_message(message)

    def fail(self, error: Exception) -> None:
        if not self._active:
            return
        self._on_error(error)

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._owner.unsubscribe(self._topic)

    async def close(self) -> None:
        self.cancel()


class MqttMessagingClient:
    """Messaging client backed by a paho-mqtt network thread."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        client: mqtt.Client,
        topics: tuple[str, ...],
    ) -> None:
        self._loop = loop
        self._client = client
        self._topics = topics
        self._lock = threading.Lock()
        self._subscriptions: dict[str, MqttSubscription] = {}
        self._pending_subacks: dict[int, str] = {}
        self._closing = False

        client.on_subscribe = self._on_subscribe
        client.on_disconnect = self._on_disconnect

    @classmethod
    async def connect(cls, config: TelemetryConfig) -> MqttMessagingClient:
        """Connect to the broker and wait for the CONNACK."""
        loop = asyncio.get_running_loop()
        broker = parse_broker(config.mqtt_broker or "", tls=config.mqtt_tls)
        _logger.debug("MQTT connect requested host=%s port=%s tls=%s", broker.host, broker.port, broker.tls)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(_logger)
        if config.mqtt_username:
            client.username_pw_set(config.mqtt_username, config.mqtt_password)
        if broker.tls:
            client.tls_set()

        connack: asyncio.Future[Any] = loop.create_future()

        def resolve(reason_code: Any) -> None:
            if not connack.done():
                connack.set_result(reason_code)

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(resolve, reason_code)

        client.on_connect = on_connect

        try:
            await loop.run_in_executor(None, client.connect, broker.host, broker.port, config.mqtt_keepalive)
        except OSError as exc:
            raise ConnectError(
                f"MQTT connect to {broker.host}:{broker.port} failed: {exc}",
                transport=TRANSPORT_MQTT,
            ) from exc
        client.loop_start()

        try:
            reason_code = await asyncio.wait_for(connack, timeout=config.mqtt_keepalive)
        except TimeoutError as exc:
            await _abandon(loop, client)
            raise ConnectError("Timed out waiting for MQTT CONNACK", transport=TRANSPORT_MQTT) from exc
        if reason_code.is_failure:
            await _abandon(loop, client)
            raise ConnectError(f"MQTT connect refused: {reason_code}", transport=TRANSPORT_MQTT)

        _logger.info("Connected to MQTT broker %s:%s", broker.host, broker.port)
        return cls(loop=loop, client=client, topics=config.mqtt_topics)

    async def list_partitions(self) -> list[str]:
        return list(self._topics)

    async def receive(
        self,
        partition_id: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        *,
        position: StartPosition,
    ) -> MqttSubscription:
        subscription = MqttSubscription(
            owner=self,
            topic=partition_id,
            on_message=on_message,
            on_error=on_error,
            position=position,
        )

        def on_topic_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            if msg.retain:
                # Retained messages predate the subscription.
                return
            try:
                message = message_from_mqtt(partition_id, msg)
            except Exception:
                _logger.debug("MQTT payload conversion failure topic=%s", msg.topic, exc_info=True)
                return
            self._loop.call_soon_threadsafe(subscription.deliver, message)

        with self._lock:
            self._subscriptions[partition_id] = subscription
            self._client.message_callback_add(partition_id, on_topic_message)
            result, mid = self._client.subscribe(partition_id, qos=1)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._subscriptions.pop(partition_id, None)
                self._client.message_callback_remove(partition_id)
                raise ReceiveError(
                    f"MQTT subscribe failed: {mqtt.error_string(result)}",
                    partition_id=partition_id,
                )
            self._pending_subacks[mid] = partition_id
        _logger.debug("MQTT subscribing topic=%s mid=%s", partition_id, mid)
        return subscription

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._subscriptions.pop(topic, None)
        self._client.message_callback_remove(topic)
        if not self._closing:
            self._client.unsubscribe(topic)

    def _on_subscribe(
        self,
        _c: mqtt.Client,
        _userdata: Any,
        mid: int,
        reason_code_list: list[Any],
        _properties: Any,
    ) -> None:
        with self._lock:
            topic = self._pending_subacks.pop(mid, None)
            subscription = self._subscriptions.get(topic) if topic is not None else None
        if subscription is None:
            return
        failures = [rc for rc in reason_code_list if rc.is_failure]
        if failures:
            error = ReceiveError(f"MQTT subscription refused: {failures[0]}", partition_id=subscription.partition_id)
            self._loop.call_soon_threadsafe(subscription.fail, error)

    def _on_disconnect(
        self,
        _c: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._closing:
            return
        _logger.debug("MQTT disconnected: %s", reason_code)
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            error = ReceiveError(f"MQTT connection lost: {reason_code}", partition_id=subscription.partition_id)
            self._loop.call_soon_threadsafe(subscription.fail, error)

    async def close(self) -> None:
        self._closing = True
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.cancel()
        try:
            _logger.debug("MQTT disconnect requested")
            await self._loop.run_in_executor(None, self._client.disconnect)
        finally:
            await self._loop.run_in_executor(None, self._client.loop_stop)
            _logger.debug("MQTT network loop stopped")
