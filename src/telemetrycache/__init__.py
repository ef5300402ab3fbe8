"""telemetrycache - latest-value cache for IoT hub device telemetry."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("telemetrycache")
except PackageNotFoundError:
    __version__ = "0+local"
from telemetrycache._source import MessagingClient, PartitionSubscription, StartPosition
from telemetrycache.cache import LatestTelemetryCache, connect_client
from telemetrycache.config import TelemetryConfig
from telemetrycache.exceptions import (
    ConfigError,
    ConnectError,
    ReceiveError,
    TelemetryError,
)
from telemetrycache.models import (
    CacheStatus,
    PartitionStatus,
    ReceivedMessage,
    SubscriptionState,
    TelemetrySnapshot,
    default_snapshot,
)

__all__ = [
    "__version__",
    "CacheStatus",
    "ConfigError",
    "ConnectError",
    "LatestTelemetryCache",
    "MessagingClient",
    "PartitionStatus",
    "PartitionSubscription",
    "ReceiveError",
    "ReceivedMessage",
    "StartPosition",
    "SubscriptionState",
    "TelemetryConfig",
    "TelemetryError",
    "TelemetrySnapshot",
    "connect_client",
    "default_snapshot",
]
