"""Duration string parsing and formatting.

Supported formats are a bare number (milliseconds) or a number followed by
one unit: ``t`` (ticks, 50ms each), ``ms``, ``s``, ``m`` or ``h``.
"""

from __future__ import annotations

import re

from pserver_lifecycle.exceptions import ConfigError

MS_PER_TICK = 50

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(t|ms|s|m|h)?$", re.IGNORECASE)

_UNIT_SECONDS = {
    "t": MS_PER_TICK / 1000,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration into seconds.

    Args:
        value: Duration string such as "10t", "500ms", "5s", "2m", "1h",
            or a number of milliseconds

    Returns:
        Duration in seconds

    Raises:
        ConfigError: If the value is empty, negative or malformed
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Duration cannot be negative: {value}")
        return value / 1000

    if value is None or not str(value).strip():
        raise ConfigError("Duration string cannot be empty")

    match = _DURATION_PATTERN.match(str(value).strip())
    if not match:
        raise ConfigError(
            f"Invalid duration format: {value!r}. Expected <number> (milliseconds) "
            "or <number><unit> where unit is t, ms, s, m or h"
        )

    amount = float(match.group(1))
    unit = (match.group(2) or "ms").lower()
    return amount * _UNIT_SECONDS[unit]


def parse_optional_duration(value: str | int | float | None) -> float | None:
    """Parse a duration that may be disabled.

    Args:
        value: Duration value, or None/false/"off"/"none" to disable

    Returns:
        Duration in seconds, or None if disabled
    """
    # YAML reads a bare "off" as false
    if value is None or value is False:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "off", "none", "disabled"):
        return None
    return parse_duration(value)


def format_duration(seconds: float) -> str:
    """Format seconds for log output (e.g., '45s', '2m 5s', '1h 30m').

    Args:
        seconds: Duration in seconds

    Returns:
        Short human readable string
    """
    total = int(seconds)
    if total < 60:
        return f"{seconds:g}s" if seconds < 1 else f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"
