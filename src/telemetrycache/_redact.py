"""Helpers for safe logging.

Connection strings carry shared access keys, and message annotations can
echo tokens back. This module redacts sensitive fields before they reach
the logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "sharedaccesskey",
        "sharedaccesssignature",
        "sas",
        "token",
        "authorization",
        "connection_string",
        "connectionstring",
    }
)


def redact_connection_string(value: str | None) -> str:
    """Return *value* with every secret ``key=value`` segment masked.

    ``Endpoint=sb://x/;SharedAccessKeyName=svc;SharedAccessKey=abc`` becomes
    ``Endpoint=sb://x/;SharedAccessKeyName=svc;SharedAccessKey=<redacted>``.
    """
    if not value:
        return ""
    parts: list[str] = []
    for segment in value.split(";"):
        key, sep, _secret = segment.partition("=")
        if sep and key.strip().lower() in _SENSITIVE_VALUE_KEYS:
            parts.append(f"{key}=<redacted>")
        else:
            parts.append(segment)
    return ";".join(parts)


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else str(k)
            if key.lower() in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    # Fallback: represent unknown objects without dumping internals.
    return repr(value)
