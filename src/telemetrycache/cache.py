"""Latest-value cache fed by a multi-partition subscription.

Usage::

    async with LatestTelemetryCache(TelemetryConfig.from_env()) as cache:
        ...
        reading = cache.get_telemetry()

Every partition of the message source delivers into one shared slot.
The most recently *delivered* body wins; there is no ordering across
partitions and no history.
"""

from __future__ import annotations

import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from telemetrycache._eventhub import EventHubMessagingClient
from telemetrycache._mqtt import MqttMessagingClient
from telemetrycache._redact import redact_for_log
from telemetrycache._source import MessagingClient, PartitionSubscription, StartPosition
from telemetrycache.config import TRANSPORT_MQTT, TelemetryConfig
from telemetrycache.exceptions import ConnectError
from telemetrycache.models import (
    CacheStatus,
    PartitionStatus,
    ReceivedMessage,
    SubscriptionState,
    TelemetrySnapshot,
    default_snapshot,
)

_logger = logging.getLogger(__name__)

ClientFactory = Callable[[TelemetryConfig], Awaitable[MessagingClient]]


async def connect_client(config: TelemetryConfig) -> MessagingClient:
    """Connect the messaging client selected by ``config.transport``."""
    config.validate()
    if config.transport == TRANSPORT_MQTT:
        return await MqttMessagingClient.connect(config)
    return await EventHubMessagingClient.connect(config)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LatestTelemetryCache:
    """Most recent telemetry payload received from any partition.

    The constructor performs no I/O. :meth:`start` connects and subscribes;
    :meth:`get_telemetry` can be polled at any time, before, during or
    after start-up, and never raises.
    """

    def __init__(
        self,
        config: TelemetryConfig,
        *,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or connect_client
        self._clock = clock
        self._data: TelemetrySnapshot = default_snapshot()
        self._status = CacheStatus()
        self._subscriptions: dict[str, PartitionSubscription] = {}
        self._stack: contextlib.AsyncExitStack | None = None
        self._started = False

    async def __aenter__(self) -> LatestTelemetryCache:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get_telemetry(self) -> TelemetrySnapshot:
        """Return the cached snapshot. Callers must not mutate it."""
        return self._data

    def status(self) -> CacheStatus:
        """Return a copy of the connection and per-partition health."""
        return self._status.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, enumerate partitions and subscribe to each of them.

        Failures are logged and recorded in :meth:`status`; nothing is
        raised to the caller and nothing is retried.
        """
        if self._started:
            return
        self._started = True
        self._status = CacheStatus(started_at=self._clock())

        stack = contextlib.AsyncExitStack()
        try:
            client = await self._client_factory(self._config)
            stack.push_async_callback(client.close)
            self._status.connected = True

            partition_ids = await client.list_partitions()
            _logger.info("The partition ids are: %s", partition_ids)

            for partition_id in partition_ids:
                await self._subscribe(client, stack, partition_id)
        except Exception as exc:
            self._record_connect_error(exc)
            await self._close_stack(stack)
            self._subscriptions.clear()
            self._started = False
            return
        except BaseException:
            await self._close_stack(stack)
            self._subscriptions.clear()
            self._started = False
            raise

        self._stack = stack

    async def stop(self) -> None:
        """Cancel every subscription and release the connection.

        The cached snapshot is kept and stays readable.
        """
        stack = self._stack
        self._stack = None
        self._started = False
        for partition_id in self._subscriptions:
            status = self._status.partitions.get(partition_id)
            if status is not None and status.state == SubscriptionState.ACTIVE:
                status.state = SubscriptionState.CLOSED
        self._subscriptions.clear()
        self._status.connected = False
        if stack is not None:
            await self._close_stack(stack)

    async def _subscribe(
        self,
        client: MessagingClient,
        stack: contextlib.AsyncExitStack,
        partition_id: str,
    ) -> None:
        """Open one partition; a failure here only fails that partition."""
        self._status.partitions[partition_id] = PartitionStatus(partition_id=partition_id)
        try:
            subscription = await client.receive(
                partition_id,
                functools.partial(self._update, partition_id),
                functools.partial(self._on_receive_error, partition_id),
                position=StartPosition.from_enqueued_time(self._clock()),
            )
        except Exception as exc:
            self._on_receive_error(partition_id, exc)
            return
        stack.push_async_callback(subscription.close)
        self._subscriptions[partition_id] = subscription
        self._mark_active(partition_id)

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _update(self, partition_id: str, message: ReceivedMessage) -> None:
        """Store the latest telemetry body."""
        status = self._status.partitions.get(partition_id)
        if status is not None:
            if status.state in (SubscriptionState.FAILED, SubscriptionState.CLOSED):
                return
            status.messages_received += 1
            status.last_message_at = self._clock()
        _logger.info("Telemetry received partition=%s body=%s", partition_id, redact_for_log(message.body))
        self._log_message(message)
        self._data = message.body

    def _on_receive_error(self, partition_id: str, error: Exception) -> None:
        _logger.error("Receive error on partition %s: %s", partition_id, error)
        status = self._status.partitions.get(partition_id)
        if status is not None:
            status.state = SubscriptionState.FAILED
            status.last_error = str(error) or type(error).__name__
        subscription = self._subscriptions.get(partition_id)
        if subscription is not None and subscription.is_active:
            subscription.cancel()

    @staticmethod
    def _log_message(message: ReceivedMessage) -> None:
        if not _logger.isEnabledFor(logging.DEBUG):
            return
        _logger.debug(
            "Application properties (set by device): %s",
            redact_for_log(message.application_properties),
        )
        _logger.debug(
            "System properties (set by IoT Hub): %s",
            redact_for_log(message.annotations),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _mark_active(self, partition_id: str) -> None:
        status = self._status.partitions[partition_id]
        if status.state == SubscriptionState.PENDING:
            status.state = SubscriptionState.ACTIVE
            return
        # An error was reported while subscribing.
        self._subscriptions[partition_id].cancel()

    def _record_connect_error(self, exc: Exception) -> None:
        error = exc if isinstance(exc, ConnectError) else ConnectError(str(exc) or type(exc).__name__)
        _logger.error("Telemetry receiver start failed: %s", error)
        _logger.debug("Telemetry receiver start failure", exc_info=exc)
        self._status.connected = False
        self._status.connect_error = str(error)
        for status in self._status.partitions.values():
            if status.state in (SubscriptionState.PENDING, SubscriptionState.ACTIVE):
                status.state = SubscriptionState.CLOSED

    @staticmethod
    async def _close_stack(stack: contextlib.AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception:
            _logger.debug("Telemetry receiver teardown failed", exc_info=True)
