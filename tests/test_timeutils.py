"""Tests for timezone-aware slot time helpers."""

from __future__ import annotations

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest

from dental_scheduler.scheduling.timeutils import (
    format_display_time,
    format_friendly_date,
    format_utc_iso,
    in_time_bucket,
    is_during_lunch,
    local_display_time_to_utc,
    normalize_display_time,
    parse_instant,
    parse_iso_date,
)

CHICAGO = ZoneInfo("America/Chicago")


class TestLunchWindow:
    @pytest.mark.parametrize(
        ("local_time", "expected"),
        [
            ("12:59", False),
            ("13:00", True),
            ("13:59", True),
            ("14:00", False),
        ],
    )
    def test_boundaries(self, local_time, expected):
        moment = parse_instant(f"2025-07-15T{local_time}:00-05:00")
        assert is_during_lunch(moment, CHICAGO) is expected

    def test_uses_practice_timezone_not_utc(self):
        # 18:30 UTC is 13:30 in Chicago (CDT)
        moment = parse_instant("2025-07-15T18:30:00Z")
        assert is_during_lunch(moment, CHICAGO) is True
        assert is_during_lunch(moment, UTC) is False

    def test_unknown_time_is_not_lunch(self):
        assert is_during_lunch(None, CHICAGO) is False


class TestParsing:
    def test_parse_instant_with_offset(self):
        moment = parse_instant("2025-07-15T14:05:00.000-05:00")
        assert moment.astimezone(UTC) == datetime(2025, 7, 15, 19, 5, tzinfo=UTC)

    def test_parse_instant_naive_uses_default_tz(self):
        moment = parse_instant("2025-07-15T09:00:00", CHICAGO)
        assert moment.tzinfo is CHICAGO

    def test_parse_instant_naive_without_default(self):
        assert parse_instant("2025-07-15T09:00:00") is None

    @pytest.mark.parametrize("value", [None, "", "tomorrow", "2025-13-45T00:00:00Z"])
    def test_parse_instant_invalid(self, value):
        assert parse_instant(value) is None

    def test_parse_iso_date(self):
        assert parse_iso_date("2025-07-15") == date(2025, 7, 15)

    @pytest.mark.parametrize("value", ["07/15/2025", "2025-7-15", "2025-02-30", "", None])
    def test_parse_iso_date_rejects(self, value):
        assert parse_iso_date(value) is None


class TestFormatting:
    def test_display_time_has_no_leading_zero(self):
        moment = parse_instant("2025-07-15T14:05:00-05:00")
        assert format_display_time(moment, CHICAGO) == "2:05 PM"

    def test_display_time_converts_to_practice_tz(self):
        moment = parse_instant("2025-07-15T15:00:00Z")
        assert format_display_time(moment, CHICAGO) == "10:00 AM"

    def test_friendly_date(self):
        assert format_friendly_date(date(2025, 7, 15)) == "Tuesday, July 15"

    def test_format_utc_iso(self):
        moment = datetime(2025, 7, 15, 14, 5, tzinfo=CHICAGO)
        assert format_utc_iso(moment) == "2025-07-15T19:05:00Z"


class TestDisplayTimeNormalization:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("2:05 PM", "2:05 PM"),
            ("2:05pm", "2:05 PM"),
            (" 10:30 am ", "10:30 AM"),
            ("12:00 PM", "12:00 PM"),
        ],
    )
    def test_valid(self, raw, expected):
        assert normalize_display_time(raw) == expected

    @pytest.mark.parametrize("raw", ["14:05", "2 PM", "02:05 PM", "13:00 PM", "2:65 PM", "", None])
    def test_invalid(self, raw):
        assert normalize_display_time(raw) is None

    def test_local_display_time_to_utc_summer(self):
        start = local_display_time_to_utc(date(2025, 7, 15), "2:05 PM", CHICAGO)
        assert format_utc_iso(start) == "2025-07-15T19:05:00Z"

    def test_local_display_time_to_utc_winter(self):
        start = local_display_time_to_utc(date(2025, 1, 15), "9:00 AM", CHICAGO)
        assert format_utc_iso(start) == "2025-01-15T15:00:00Z"

    def test_local_display_time_to_utc_invalid(self):
        with pytest.raises(ValueError):
            local_display_time_to_utc(date(2025, 7, 15), "soon", CHICAGO)


class TestTimeBuckets:
    def test_afternoon_includes_boundaries(self):
        assert in_time_bucket(parse_instant("2025-07-15T12:00:00-05:00"), CHICAGO, "Afternoon")
        assert in_time_bucket(parse_instant("2025-07-15T17:00:00-05:00"), CHICAGO, "Afternoon")
        assert not in_time_bucket(parse_instant("2025-07-15T17:01:00-05:00"), CHICAGO, "Afternoon")

    def test_unknown_bucket(self):
        assert not in_time_bucket(parse_instant("2025-07-15T12:00:00-05:00"), CHICAGO, "Brunch")
