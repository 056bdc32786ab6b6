"""Decoder for the drone's periodic ``key:value;key:value;`` state broadcast."""

import re
from typing import Optional

from .common import log

BATTERY_KEY     = "bat"
FLIGHT_TIME_KEY = "time"

NOT_AVAILABLE = "N/A"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def decode(raw: bytes) -> Optional[dict]:
    """
    Decode one state datagram into a key -> value mapping.
    Returns None for a malformed broadcast; the caller drops it.
    Unknown keys are kept as-is.
    """
    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode("utf-8", errors="replace")
    else:
        text = str(raw)

    fields = {}
    for token in text.split(";"):
        if ":" not in token:
            continue
        key, _, value = token.partition(":")
        key = key.strip()
        if not key:
            continue
        fields[key] = value.strip()

    if fields:
        return fields

    if text.strip() and not is_error_marker(text):
        log.warning(f"State broadcast parsed into no fields, dropping: {text!r}")
    return None


def is_error_marker(text: str) -> bool:
    return "error" in text


def _parse_leading_int(value) -> Optional[int]:
    """Integer prefix of ``value`` ("87", " 87%", "125.4"), or None."""
    if value is None:
        return None
    match = _LEADING_INT.match(str(value))
    if not match:
        return None
    return int(match.group(1))


def parse_battery(value) -> Optional[int]:
    return _parse_leading_int(value)


def format_flight_time(value) -> str:
    """Seconds -> ``"Xm Ys"``; ``"N/A"`` when the field is not numeric."""
    total_seconds = _parse_leading_int(value)
    if total_seconds is None:
        return NOT_AVAILABLE
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds}s"
