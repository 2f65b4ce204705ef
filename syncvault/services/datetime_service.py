"""Timestamps used by the metadata store."""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def now_iso() -> str:
    """Return the current UTC time as ISO 8601."""
    return format_iso(now_utc())


def epoch_millis() -> int:
    """Return the current wall-clock time in epoch milliseconds.

    ``last_tool_write_at`` is stored in this unit so it can be compared
    across process restarts.
    """
    return time.time_ns() // 1_000_000
