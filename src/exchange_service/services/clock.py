"""UTC timestamp helpers."""

from __future__ import annotations

from datetime import UTC, datetime


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp, accepting a trailing ``Z``.

    Naive timestamps are taken to be UTC. The result is normalised to UTC.

    Raises:
        ValueError: If the value is not a valid ISO 8601 timestamp.
        OverflowError: If the UTC instant falls outside the datetime range.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Render an aware datetime as UTC ISO 8601 with Z suffix."""
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
