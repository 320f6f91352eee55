"""perpdesk.core.time

The exchange speaks epoch milliseconds. We speak aware UTC datetimes and epoch
seconds. This module is the only place that converts between them.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def from_epoch_ms(value: float) -> float:
    """Exchange epoch milliseconds -> epoch seconds."""

    return float(value) / 1000.0


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 datetime string into an aware UTC datetime.

    Accepts a ``Z`` suffix, explicit offsets and naive timestamps (assumed UTC).

    Raises:
        ValueError: if parsing fails.
    """

    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"

    dt = datetime.fromisoformat(v)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def sort_key_ts(value: str | None) -> float:
    """Epoch seconds for ordering; unparsable or missing sorts first."""

    if not value:
        return 0.0
    try:
        return parse_dt(value).timestamp()
    except ValueError:
        return 0.0
