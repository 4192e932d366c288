"""Adaptive search windows around an article's publish time.

Fresh articles get a tight window, older ones a wider window, so that
coverage of a breaking story is not diluted by unrelated older reporting.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from common.datetime import parse_datetime, utc_now

FRESH_AGE = timedelta(hours=24)
RECENT_AGE = timedelta(days=7)

FRESH_WINDOW = timedelta(hours=48)
RECENT_WINDOW = timedelta(days=7)
OLD_WINDOW = timedelta(days=14)


def window_size(published_at: datetime, reference_time: datetime | None = None) -> timedelta:
    """Half-width of the window for an article published at published_at."""
    reference_time = parse_datetime(reference_time) if reference_time else utc_now()
    age = reference_time - parse_datetime(published_at)
    if age < FRESH_AGE:
        return FRESH_WINDOW
    if age < RECENT_AGE:
        return RECENT_WINDOW
    return OLD_WINDOW


def calculate_window(
    published_at: datetime, reference_time: datetime | None = None
) -> tuple[datetime, datetime]:
    """Return (from, to) centered on published_at."""
    published_at = parse_datetime(published_at)
    size = window_size(published_at, reference_time)
    return published_at - size, published_at + size


def is_within_window(
    source_date: datetime,
    candidate_date: datetime,
    reference_time: datetime | None = None,
) -> bool:
    """True if candidate_date lies in the source article's window, ends inclusive."""
    start, end = calculate_window(source_date, reference_time)
    return start <= parse_datetime(candidate_date) <= end
