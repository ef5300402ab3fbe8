"""Event Hubs adapter for the IoT hub built-in endpoint.

Wraps ``azure.eventhub.aio.EventHubConsumerClient``: one receive task per
partition, all running on the caller's event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from azure.eventhub.aio import EventHubConsumerClient
from azure.eventhub.exceptions import EventHubError

from telemetrycache._redact import redact_connection_string
from telemetrycache._source import ErrorCallback, MessageCallback, StartPosition
from telemetrycache.config import TRANSPORT_EVENTHUB, TelemetryConfig
from telemetrycache.exceptions import ConnectError, ReceiveError
from telemetrycache.models import ReceivedMessage

_logger = logging.getLogger(__name__)


def _to_str(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def convert_binary_dict(src: Any) -> dict[str, Any]:
    """Decode the bytes keys/values AMQP hands back for properties."""
    if not src:
        return {}
    return {_to_str(key): _to_str(value) for key, value in src.items()}


def message_from_event(partition_id: str, event: Any) -> ReceivedMessage:
    """Convert an ``EventData`` into a :class:`ReceivedMessage`.

    JSON bodies are decoded; anything else is kept as text, or as the raw
    body when it is not valid UTF-8.
    """
    try:
        body = event.body_as_json()
    except TypeError:
        try:
            body = event.body_as_str()
        except TypeError:
            body = event.body
    return ReceivedMessage(
        partition_id=partition_id,
        body=body,
        application_properties=convert_binary_dict(event.properties),
        annotations=convert_binary_dict(event.system_properties),
        enqueued_time=event.enqueued_time,
    )


class EventHubSubscription:
    """Receive task bound to a single partition."""

    def __init__(self, partition_id: str, task: asyncio.Task[None]) -> None:
        self._partition_id = partition_id
        self._task = task

    @property
    def partition_id(self) -> str:
        return self._partition_id

    @property
    def is_active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def close(self) -> None:
        self.cancel()
        if self._task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class EventHubMessagingClient:
    """Messaging client backed by the Event Hubs-compatible endpoint."""

    def __init__(self, consumer: EventHubConsumerClient) -> None:
        self._consumer = consumer
        self._subscriptions: dict[str, EventHubSubscription] = {}

    @classmethod
    async def connect(cls, config: TelemetryConfig) -> EventHubMessagingClient:
        """Create the consumer and open a management link to validate it."""
        connection_string = config.connection_string or ""
        _logger.debug(
            "Creating EventHubConsumerClient consumer_group=%s connection=%s",
            config.consumer_group,
            redact_connection_string(connection_string),
        )
        try:
            consumer = EventHubConsumerClient.from_connection_string(
                connection_string,
                consumer_group=config.consumer_group,
                eventhub_name=config.eventhub_name,
            )
        except (ValueError, EventHubError) as exc:
            raise ConnectError(f"Invalid Event Hubs connection string: {exc}", transport=TRANSPORT_EVENTHUB) from exc

        try:
            properties = await consumer.get_eventhub_properties()
        except (EventHubError, OSError) as exc:
            await consumer.close()
            raise ConnectError(f"Could not reach Event Hubs endpoint: {exc}", transport=TRANSPORT_EVENTHUB) from exc

        _logger.info("Successfully created the EventHub client for %s", properties.get("eventhub_name"))
        return cls(consumer)

    async def list_partitions(self) -> list[str]:
        try:
            ids = await self._consumer.get_partition_ids()
        except EventHubError as exc:
            raise ConnectError(f"Partition enumeration failed: {exc}", transport=TRANSPORT_EVENTHUB) from exc
        return [str(pid) for pid in ids]

    async def receive(
        self,
        partition_id: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        *,
        position: StartPosition,
    ) -> EventHubSubscription:
        async def on_event(_partition_context: Any, event: Any) -> None:
            if event is None:
                return
            on_message(message_from_event(partition_id, event))

        async def on_receive_error(_partition_context: Any, error: Exception) -> None:
            err = ReceiveError(str(error) or type(error).__name__, partition_id=partition_id)
            err.__cause__ = error
            on_error(err)

        async def run() -> None:
            try:
                await self._consumer.receive(
                    on_event=on_event,
                    on_error=on_receive_error,
                    partition_id=partition_id,
                    starting_position=position.enqueued_time,
                    starting_position_inclusive=True,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _logger.debug("Receive task for partition %s ended", partition_id, exc_info=True)
                err = ReceiveError(f"Receive loop ended: {exc}", partition_id=partition_id)
                err.__cause__ = exc
                on_error(err)

        task = asyncio.create_task(run(), name=f"eventhub-receive-{partition_id}")
        subscription = EventHubSubscription(partition_id, task)
        self._subscriptions[partition_id] = subscription
        _logger.debug(
            "Receiving partition=%s from enqueued_time=%s",
            partition_id,
            position.enqueued_time.isoformat(),
        )
        return subscription

    async def close(self) -> None:
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            await subscription.close()
        await self._consumer.close()
