"""Tests for common.datetime module."""

from datetime import datetime, timezone

from common.datetime import parse_datetime, parse_optional_datetime, to_utc_string


class TestParseDatetime:
    def test_none_returns_current_utc(self) -> None:
        before = datetime.now(timezone.utc)
        result = parse_datetime(None)
        after = datetime.now(timezone.utc)
        assert before <= result <= after
        assert result.tzinfo is not None

    def test_datetime_passthrough(self) -> None:
        dt = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert parse_datetime(dt) is dt

    def test_iso_string_parsing(self) -> None:
        result = parse_datetime("2024-01-01T12:00:00+00:00")
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_iso_string_with_z_suffix(self) -> None:
        result = parse_datetime("2024-01-01T12:00:00Z")
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_naive_values_are_utc(self) -> None:
        result = parse_datetime("2024-01-01T12:00:00")
        assert result.tzinfo == timezone.utc


class TestParseOptionalDatetime:
    def test_blank_values_stay_none(self) -> None:
        assert parse_optional_datetime(None) is None
        assert parse_optional_datetime("  ") is None

    def test_parses_value(self) -> None:
        assert parse_optional_datetime("2024-01-01T12:00:00Z").year == 2024


class TestToUtcString:
    def test_formats_with_z_suffix(self) -> None:
        dt = datetime.fromisoformat("2024-01-01T14:30:15.123+02:00")
        assert to_utc_string(dt) == "2024-01-01T12:30:15Z"
