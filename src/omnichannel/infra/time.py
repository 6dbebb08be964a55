"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch(value: str | int | float | None, *, millis: bool = False) -> datetime:
    """Convert a webhook epoch timestamp to an aware UTC datetime.

    Meta sends seconds as strings for WhatsApp and milliseconds as ints for
    Instagram/Messenger. Missing or unparseable values fall back to now.
    """
    if value is None or value == "":
        return utc_now()
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return utc_now()
    if millis:
        seconds /= 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        # nan, inf or out of range
        return utc_now()
