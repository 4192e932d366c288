"""Datetime utilities."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value) -> datetime:
    """Parse datetime from ISO string or return as-is if already datetime.

    Naive values are assumed to be UTC so that comparisons never mix naive
    and aware datetimes.
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_optional_datetime(value) -> datetime | None:
    """Like parse_datetime, but None and blank strings stay None."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_datetime(value)


def to_utc_string(value: datetime) -> str:
    """Format as second-precision ISO-8601 UTC with a Z suffix."""
    return parse_datetime(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
