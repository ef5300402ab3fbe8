"""Telemetry message and subscription status models.

Message bodies are kept exactly as received. No schema is applied to them;
the models here only describe the envelope around a body and the health of
the receive subscriptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator

#: Whatever the device sent as the message body, typically a mapping of
#: field name to scalar such as ``{"temperature": 21.5, "humidity": 40}``.
TelemetrySnapshot: TypeAlias = Any


def default_snapshot() -> dict[str, Any]:
    """Snapshot returned before any message has been delivered."""
    return {"temperature": 0, "humidity": 0}


class ReceivedMessage(BaseModel):
    """A message delivered by one partition of the message source."""

    model_config = ConfigDict(frozen=True)

    partition_id: str
    body: Any = None
    application_properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Properties set by the device",
    )
    annotations: dict[str, Any] = Field(
        default_factory=dict,
        description="System properties set by the hub (device id, enqueued time, ...)",
    )
    enqueued_time: datetime | None = None

    @field_validator("partition_id")
    @classmethod
    def _normalize_partition_id(cls, value: str) -> str:
        partition_id = value.strip()
        if not partition_id:
            raise ValueError("partition_id must be non-empty")
        return partition_id

    @field_validator("enqueued_time")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class SubscriptionState(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


class PartitionStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    partition_id: str
    state: SubscriptionState = SubscriptionState.PENDING
    messages_received: int = 0
    last_message_at: datetime | None = None
    last_error: str | None = None


class CacheStatus(BaseModel):
    """Health of a cache, surfaced next to the snapshot."""

    model_config = ConfigDict(extra="forbid")

    connected: bool = False
    connect_error: str | None = None
    started_at: datetime | None = None
    partitions: dict[str, PartitionStatus] = Field(default_factory=dict)

    @property
    def receiving(self) -> bool:
        """Whether at least one partition is still delivering."""
        return any(p.state == SubscriptionState.ACTIVE for p in self.partitions.values())
