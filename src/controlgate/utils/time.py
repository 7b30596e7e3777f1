"""Time utilities."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def ms_from_now(milliseconds: int, now: datetime | None = None) -> datetime:
    """Return the instant `milliseconds` after `now` (default: current time)."""
    return (now or utc_now()) + timedelta(milliseconds=milliseconds)


def iso(value: datetime) -> str:
    """Render a timestamp the way it appears in activity and error text."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
