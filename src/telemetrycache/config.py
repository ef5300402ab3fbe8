"""Receiver configuration for telemetrycache."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from telemetrycache.exceptions import ConfigError

TRANSPORT_EVENTHUB = "eventhub"
TRANSPORT_MQTT = "mqtt"
_TRANSPORTS = frozenset({TRANSPORT_EVENTHUB, TRANSPORT_MQTT})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _split_topics(value: str) -> tuple[str, ...]:
    return tuple(topic.strip() for topic in value.split(",") if topic.strip())


@dataclasses.dataclass(frozen=True)
class TelemetryConfig:
    """Receiver configuration.

    Parameters
    ----------
    connection_string : str or None
        Event Hubs-compatible connection string of the IoT hub's built-in
        endpoint. Required when ``transport`` is ``"eventhub"``.
        Obtain it with
        ``az iot hub connection-string show --hub-name <hub> --default-eventhub``.
    transport : str
        Message source backend, ``"eventhub"`` or ``"mqtt"``.
    consumer_group : str
        Event Hubs consumer group used for every partition receiver.
    eventhub_name : str or None
        Event Hub name. Only needed when the connection string carries no
        ``EntityPath``.
    mqtt_broker : str or None
        MQTT broker as ``host[:port]`` (``mqtt://`` / ``mqtts://`` prefixes
        are accepted). Required when ``transport`` is ``"mqtt"``.
    mqtt_topics : tuple of str
        Topics to subscribe to. Each topic is treated as one partition.
    mqtt_username : str or None
        Optional MQTT username.
    mqtt_password : str or None
        Optional MQTT password.
    mqtt_tls : bool
        Enable TLS with the system CA bundle.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    server_host : str
        Bind address of the polling HTTP endpoint.
    server_port : int
        Port of the polling HTTP endpoint.
    """

    connection_string: str | None = dataclasses.field(default=None, repr=False)
    transport: str = TRANSPORT_EVENTHUB
    consumer_group: str = "$Default"
    eventhub_name: str | None = None
    mqtt_broker: str | None = None
    mqtt_topics: tuple[str, ...] = ("devices/+/messages/events/#",)
    mqtt_username: str | None = None
    mqtt_password: str | None = dataclasses.field(default=None, repr=False)
    mqtt_tls: bool = False
    mqtt_keepalive: int = 60
    server_host: str = "0.0.0.0"  # noqa: S104
    server_port: int = 8080

    def validate(self) -> None:
        """Raise :class:`ConfigError` if the configuration cannot be used."""
        if self.transport not in _TRANSPORTS:
            raise ConfigError(f"Unknown transport {self.transport!r} (expected one of {sorted(_TRANSPORTS)})")
        if self.transport == TRANSPORT_EVENTHUB and not (self.connection_string or "").strip():
            raise ConfigError("connection_string is required for the eventhub transport")
        if self.transport == TRANSPORT_MQTT:
            if not (self.mqtt_broker or "").strip():
                raise ConfigError("mqtt_broker is required for the mqtt transport")
            if not self.mqtt_topics:
                raise ConfigError("mqtt_topics must name at least one topic")
        if self.mqtt_keepalive <= 0:
            raise ConfigError("mqtt_keepalive must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> TelemetryConfig:
        """Create configuration from environment variables.

        Reads ``IOTHUB_EVENTHUB_CONNECTION_STRING`` and the optional
        ``IOTHUB_*`` / ``TELEMETRY_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TelemetryConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "IOTHUB_EVENTHUB_CONNECTION_STRING": "connection_string",
            "IOTHUB_CONSUMER_GROUP": "consumer_group",
            "IOTHUB_EVENTHUB_NAME": "eventhub_name",
            "TELEMETRY_TRANSPORT": "transport",
            "TELEMETRY_MQTT_BROKER": "mqtt_broker",
            "TELEMETRY_MQTT_USERNAME": "mqtt_username",
            "TELEMETRY_MQTT_PASSWORD": "mqtt_password",
            "TELEMETRY_SERVER_HOST": "server_host",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        if "transport" in config_kwargs:
            config_kwargs["transport"] = config_kwargs["transport"].strip().lower()

        topics_env = env.get("TELEMETRY_MQTT_TOPICS")
        if topics_env is not None and "mqtt_topics" not in overrides:
            config_kwargs["mqtt_topics"] = _split_topics(topics_env)

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("TELEMETRY_MQTT_TLS"), False)

        try:
            keepalive_env = env.get("TELEMETRY_MQTT_KEEPALIVE")
            if keepalive_env is not None and "mqtt_keepalive" not in overrides:
                config_kwargs["mqtt_keepalive"] = int(keepalive_env)

            port_env = env.get("TELEMETRY_SERVER_PORT")
            if port_env is not None and "server_port" not in overrides:
                config_kwargs["server_port"] = int(port_env)
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric environment value: {exc}") from exc

        # Allow a comma-separated string override for convenience
        topics_override = overrides.get("mqtt_topics")
        if isinstance(topics_override, str):
            overrides["mqtt_topics"] = _split_topics(topics_override)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
