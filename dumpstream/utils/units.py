"""
Parsing helpers for human-friendly sizes and durations.

Sizes use binary multiples ("16M" == 16 * 1024 * 1024), durations accept
ms/s/m/h suffixes ("60s", "1.5m").
"""

import re


_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([kmgtp]?)i?b?\s*$', re.IGNORECASE)
_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$', re.IGNORECASE)

_SIZE_MULTIPLIERS = {
    '': 1,
    'k': 1024,
    'm': 1024 ** 2,
    'g': 1024 ** 3,
    't': 1024 ** 4,
    'p': 1024 ** 5,
}

_DURATION_MULTIPLIERS = {
    'ms': 0.001,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}


def parse_size(value) -> int:
    """
    Parse a size string into a number of bytes.

    Args:
        value: Size such as 16M, 700G, 1024 or an int

    Returns:
        Number of bytes

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Size must not be negative: {value}")
        return value

    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    return int(float(number) * _SIZE_MULTIPLIERS[unit.lower()])


def parse_duration(value) -> float:
    """
    Parse a duration string into seconds.

    Args:
        value: Duration such as 60s, 500ms, 2m or a bare number of seconds

    Returns:
        Number of seconds as float

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)

    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")

    number, unit = match.groups()
    return float(number) * _DURATION_MULTIPLIERS[(unit or 's').lower()]


def format_size(size_bytes: int) -> str:
    """Human-readable byte count."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 ** 3:
        return f"{size_bytes / 1024 / 1024:.2f} MB"
    return f"{size_bytes / 1024 ** 3:.2f} GB"
