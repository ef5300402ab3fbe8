"""Structural interface to the messaging client libraries.

The cache never talks to a broker itself. It consumes a client through
this narrow surface, which the Event Hubs and MQTT adapters implement and
which tests replace with in-memory doubles.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from telemetrycache.models import ReceivedMessage

MessageCallback = Callable[[ReceivedMessage], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class StartPosition:
    """Where a new subscription starts reading.

    Only events enqueued at or after ``enqueued_time`` are delivered; the
    backlog retained by the source is never replayed.
    """

    enqueued_time: datetime

    @classmethod
    def from_enqueued_time(cls, when: datetime) -> StartPosition:
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return cls(enqueued_time=when)

    def accepts(self, enqueued_time: datetime | None) -> bool:
        """Whether a message enqueued at *enqueued_time* is new enough."""
        if enqueued_time is None:
            return True
        return enqueued_time >= self.enqueued_time


class PartitionSubscription(Protocol):
    """One open receive stream against one partition."""

    @property
    def partition_id(self) -> str: ...

    @property
    def is_active(self) -> bool: ...

    def cancel(self) -> None:
        """Request the stream to stop. Safe to call from a callback."""
        ...

    async def close(self) -> None:
        """Stop the stream and wait until it has released its resources."""
        ...


class MessagingClient(Protocol):
    """A connected client able to enumerate and receive from partitions."""

    async def list_partitions(self) -> list[str]: ...

    async def receive(
        self,
        partition_id: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        *,
        position: StartPosition,
    ) -> PartitionSubscription: ...

    async def close(self) -> None: ...
