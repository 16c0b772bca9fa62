"""Core utility functions shared across modules."""

from __future__ import annotations

import math
import re
from typing import Union

_RATE_PATTERN = re.compile(
    r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[kKmMgG]?)(?:bps|b/s|bit/s|bit)?\s*$"
)

_RATE_MULTIPLIERS = {
    "": 1,
    "k": 1_000,
    "m": 1_000_000,
    "g": 1_000_000_000,
}


def parse_rate(value: Union[str, int, float]) -> int:
    """Convert a rate such as ``"20Mbps"``, ``"10M"`` or ``512000`` to bits/s.

    Raises:
        ValueError: If the value is not a positive rate.

    Examples:
        >>> parse_rate("20Mbps")
        20000000
        >>> parse_rate("1.5G")
        1500000000
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid rate: {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Invalid rate: {value!r}")
        rate = int(value)
    elif not isinstance(value, str):
        raise ValueError(f"Invalid rate: {value!r}")
    else:
        match = _RATE_PATTERN.match(value)
        if match is None:
            raise ValueError(f"Invalid rate: {value!r}")
        multiplier = _RATE_MULTIPLIERS[match.group("unit").lower()]
        amount = float(match.group("value")) * multiplier
        if not math.isfinite(amount):
            raise ValueError(f"Invalid rate: {value!r}")
        rate = int(amount)
    if rate <= 0:
        raise ValueError(f"Rate must be positive: {value!r}")
    return rate


def format_rate(bits_per_second: int) -> str:
    """Render bits/s in the compact RouterOS notation (``20M``, ``512k``)."""
    for suffix, multiplier in (("G", 1_000_000_000), ("M", 1_000_000), ("k", 1_000)):
        if bits_per_second >= multiplier and bits_per_second % multiplier == 0:
            return f"{bits_per_second // multiplier}{suffix}"
    return str(bits_per_second)


def parse_routeros_duration(value: str) -> int:
    """Convert RouterOS durations like ``1w2d3h4m5s`` to seconds."""
    units = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1, "ms": 0}
    total = 0
    for amount, unit in re.findall(r"(\d+)(ms|[wdhms])", value or ""):
        total += int(amount) * units[unit]
    return total
