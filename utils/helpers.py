# utils/helpers.py
import logging
from decimal import Decimal
from typing import Any

logger = logging.getLogger(__name__)

# --- Status Constants ---
STATUS_NA = "N/A"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


# --- Formatting Functions ---
def format_number(value: Any) -> str:
    """
    Formats a reading in its shortest textual form.

    Integral floats lose their fraction (``500.0`` -> ``"500"``), other floats
    use the shortest round-tripping digits in fixed-point notation
    (``1e-05`` -> ``"0.00001"``).

    Args:
        value: The value to format (int, float, or other type)

    Returns:
        Formatted string representation of the value, or "N/A" if None
    """
    if value is None:
        return STATUS_NA
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        value = float(value)
        if value.is_integer():
            return str(int(value))
        return format(Decimal(repr(value)), "f")
    return str(value)


def format_time_ago(elapsed_seconds: Any) -> str:
    """
    Formats elapsed time into a human-readable "time ago" string.

    Args:
        elapsed_seconds: Number of seconds elapsed (int or float)

    Returns:
        Human-readable time string like "5s ago", "2 min ago", "1 day ago"
    """
    if not isinstance(elapsed_seconds, (int, float)) or elapsed_seconds < 0:
        return "never"
    if elapsed_seconds < 5: return "just now"
    if elapsed_seconds < 60: return f"{int(elapsed_seconds)}s ago"
    if elapsed_seconds < 3600: return f"{int(elapsed_seconds / 60)} min ago"
    if elapsed_seconds < 86400: return f"{int(elapsed_seconds / 3600)} hr ago"
    d = int(elapsed_seconds / 86400)
    return f"{d} day{'s' if d > 1 else ''} ago"
