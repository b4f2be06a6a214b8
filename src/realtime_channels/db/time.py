# src/realtime_channels/db/time.py
"""Time utilities for database models."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def isoformat_now() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")
