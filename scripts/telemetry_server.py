#!/usr/bin/env python3
"""Receive IoT hub telemetry and serve the latest reading over HTTP.

Reads the connection settings from the environment (see
``TelemetryConfig.from_env``), subscribes to every partition and exposes
``GET /telemetry`` and ``GET /health``.

For simplicity the connection string may also be passed with
``--connection-string``; in production keep it in
``IOTHUB_EVENTHUB_CONNECTION_STRING`` instead.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from telemetrycache import ConfigError, TelemetryConfig  # noqa: E402
from telemetrycache.server import run  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve the latest IoT hub telemetry reading over HTTP.",
    )
    parser.add_argument(
        "--connection-string",
        default=None,
        help="Event Hubs-compatible connection string (overrides the environment).",
    )
    parser.add_argument(
        "--transport",
        choices=("eventhub", "mqtt"),
        default=None,
        help="Message source backend.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP port to listen on.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs (includes message properties).",
    )
    return parser.parse_args()


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, object] = {}
    if args.connection_string is not None:
        overrides["connection_string"] = args.connection_string
    if args.transport is not None:
        overrides["transport"] = args.transport
    if args.port is not None:
        overrides["server_port"] = args.port

    try:
        config = TelemetryConfig.from_env(**overrides)
        config.validate()
    except ConfigError as exc:
        print(f"[telemetry] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    run(config)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
