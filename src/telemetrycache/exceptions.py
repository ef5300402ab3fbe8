"""Custom exception hierarchy for telemetrycache."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base exception for all telemetrycache errors."""


class ConfigError(TelemetryError):
    """Invalid or missing configuration."""


class ConnectError(TelemetryError):
    """Connecting to the message source or enumerating partitions failed."""

    def __init__(
        self,
        message: str,
        *,
        transport: str = "",
    ) -> None:
        self.transport = transport
        super().__init__(message)


class ReceiveError(TelemetryError):
    """A single partition subscription reported an error.

    The error is confined to the partition it was raised for; other
    subscriptions keep delivering.
    """

    def __init__(
        self,
        message: str,
        *,
        partition_id: str = "",
    ) -> None:
        self.partition_id = partition_id
        super().__init__(message)
