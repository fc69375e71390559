"""Tests for civil-time interval splitting."""

from datetime import date, datetime, timedelta, timezone

import pytest

from focus_rollups.splitter import (
    DEFAULT_TZ,
    InvalidTimezoneError,
    RollupError,
    UnsupportedGranularityError,
    add_months,
    civil_midnight,
    civil_today,
    clamp_interval,
    day_of,
    hour_of,
    list_period_ids,
    normalize_tz,
    parse_period_id,
    period_id,
    period_start,
    resolve_timezone,
    seconds_by_key,
    split_interval,
)


def utc(year, month, day, hour=0, minute=0, second=0, microsecond=0):
    return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=timezone.utc)


class TestSplitAcrossBoundaries:
    """Tests for splitting intervals at hour, day and month boundaries."""

    def test_midnight_crossing_splits_into_two_days(self):
        """23:50 to 00:10 gives two day pieces summing to 1200 seconds."""
        pieces = split_interval(utc(2025, 1, 25, 23, 50), utc(2025, 1, 26, 0, 10), "UTC", "day")

        assert [(p.key, p.seconds) for p in pieces] == [("2025-01-25", 600), ("2025-01-26", 600)]
        assert sum(p.seconds for p in pieces) == 1200

    def test_midnight_crossing_attributed_to_hours_23_and_0(self):
        """The hour pieces of a midnight crossing land in hours 23 and 0."""
        pieces = split_interval(utc(2025, 1, 25, 23, 50), utc(2025, 1, 26, 0, 10), "UTC", "hour")

        assert [(p.key, p.seconds) for p in pieces] == [
            ("2025-01-25T23", 600),
            ("2025-01-26T00", 600),
        ]
        assert [hour_of(p.key) for p in pieces] == [23, 0]
        assert [day_of(p.key) for p in pieces] == ["2025-01-25", "2025-01-26"]

    def test_interval_inside_one_bucket(self):
        """An interval that crosses no boundary yields one piece."""
        pieces = split_interval(utc(2025, 1, 25, 10, 5), utc(2025, 1, 25, 10, 35), "UTC", "hour")

        assert len(pieces) == 1
        assert pieces[0].key == "2025-01-25T10"
        assert pieces[0].seconds == 1800
        assert pieces[0].start == utc(2025, 1, 25, 10, 5)
        assert pieces[0].end == utc(2025, 1, 25, 10, 35)

    def test_pieces_are_contiguous(self):
        """Each piece starts where the previous one ended."""
        start = utc(2025, 1, 25, 8, 17)
        end = utc(2025, 1, 25, 13, 2)
        pieces = split_interval(start, end, "UTC", "hour")

        assert pieces[0].start == start
        assert pieces[-1].end == end
        for before, after in zip(pieces, pieces[1:]):
            assert before.end == after.start
        assert sum(p.seconds for p in pieces) == int((end - start).total_seconds())

    def test_month_boundary(self):
        """A session over New Year's midnight splits into December and January."""
        pieces = split_interval(utc(2024, 12, 31, 23, 0), utc(2025, 1, 1, 1, 0), "UTC", "month")

        assert [(p.key, p.seconds) for p in pieces] == [("2024-12", 3600), ("2025-01", 3600)]

    def test_civil_time_uses_timezone_offset(self):
        """UTC 22:30 to 23:30 crosses local midnight in Europe/Berlin (UTC+1)."""
        pieces = split_interval(utc(2025, 1, 25, 22, 30), utc(2025, 1, 25, 23, 30), "Europe/Berlin", "day")

        assert [(p.key, p.seconds) for p in pieces] == [("2025-01-25", 1800), ("2025-01-26", 1800)]

    def test_non_utc_input_offsets_are_normalized(self):
        """Aware datetimes in any offset are treated as instants."""
        plus_two = timezone(timedelta(hours=2))
        start = datetime(2025, 1, 26, 1, 50, tzinfo=plus_two)
        end = datetime(2025, 1, 26, 2, 10, tzinfo=plus_two)

        pieces = split_interval(start, end, "UTC", "day")

        assert [(p.key, p.seconds) for p in pieces] == [("2025-01-25", 600), ("2025-01-26", 600)]
        assert pieces[0].start.tzinfo == timezone.utc

    def test_sub_second_pieces_are_truncated(self):
        """Fractional seconds are truncated per piece, never rounded."""
        pieces = split_interval(
            utc(2025, 1, 25, 23, 59, 59, 600000),
            utc(2025, 1, 26, 0, 0, 0, 900000),
            "UTC",
            "day",
        )

        assert [(p.key, p.seconds) for p in pieces] == [("2025-01-25", 0), ("2025-01-26", 0)]


class TestDaylightSavingTime:
    """Tests for 23- and 25-hour civil days."""

    def test_spring_forward_day_has_23_hours(self):
        """Europe/London 2025-03-30 skips 01:00; the day is 23 hours long."""
        start = civil_midnight(date(2025, 3, 30), "Europe/London")
        end = civil_midnight(date(2025, 3, 31), "Europe/London")

        days = split_interval(start, end, "Europe/London", "day")
        hours = split_interval(start, end, "Europe/London", "hour")

        assert [(p.key, p.seconds) for p in days] == [("2025-03-30", 23 * 3600)]
        assert len(hours) == 23
        assert "2025-03-30T01" not in {p.key for p in hours}
        assert all(p.seconds == 3600 for p in hours)

    def test_fall_back_day_has_25_hours(self):
        """Europe/London 2025-10-26 repeats 01:00; both occurrences land in hour 1."""
        start = civil_midnight(date(2025, 10, 26), "Europe/London")
        end = civil_midnight(date(2025, 10, 27), "Europe/London")

        days = split_interval(start, end, "Europe/London", "day")
        by_hour = seconds_by_key(split_interval(start, end, "Europe/London", "hour"))

        assert [(p.key, p.seconds) for p in days] == [("2025-10-26", 25 * 3600)]
        assert by_hour["2025-10-26T01"] == 2 * 3600
        assert len(by_hour) == 24
        assert sum(by_hour.values()) == 25 * 3600

    def test_session_across_spring_gap(self):
        """A session spanning the skipped hour counts true elapsed seconds."""
        # 00:30 GMT to 02:30 BST is 1 hour of real time
        start = utc(2025, 3, 30, 0, 30)
        end = utc(2025, 3, 30, 1, 30)

        pieces = split_interval(start, end, "Europe/London", "hour")

        assert [(p.key, p.seconds) for p in pieces] == [
            ("2025-03-30T00", 1800),
            ("2025-03-30T02", 1800),
        ]


class TestSplitEdgeCases:
    """Tests for empty, invalid and unsupported input."""

    def test_empty_interval(self):
        """end == start yields no pieces."""
        instant = utc(2025, 1, 25, 10)
        assert split_interval(instant, instant, "UTC", "hour") == []

    def test_negative_interval(self):
        """end < start yields no pieces."""
        assert split_interval(utc(2025, 1, 25, 11), utc(2025, 1, 25, 10), "UTC", "day") == []

    def test_unknown_timezone(self):
        """Unknown IANA names raise InvalidTimezoneError."""
        with pytest.raises(InvalidTimezoneError) as exc_info:
            split_interval(utc(2025, 1, 25, 10), utc(2025, 1, 25, 11), "Mars/Olympus_Mons", "hour")
        assert exc_info.value.tz == "Mars/Olympus_Mons"
        assert isinstance(exc_info.value, RollupError)
        assert isinstance(exc_info.value, ValueError)

    def test_unsupported_granularity(self):
        """Granularities other than hour, day and month are rejected."""
        with pytest.raises(UnsupportedGranularityError, match="week"):
            split_interval(utc(2025, 1, 25, 10), utc(2025, 1, 25, 11), "UTC", "week")

    def test_naive_datetime_rejected(self):
        """Naive datetimes are ambiguous instants and are rejected."""
        with pytest.raises(ValueError, match="timezone-aware"):
            split_interval(datetime(2025, 1, 25, 10), utc(2025, 1, 25, 11), "UTC", "hour")


class TestTimezoneHelpers:
    """Tests for timezone normalization and lookup."""

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_blank_timezone_uses_default(self, value):
        assert normalize_tz(value) == DEFAULT_TZ

    def test_timezone_is_trimmed(self):
        assert normalize_tz("  America/New_York ") == "America/New_York"

    def test_resolve_known_timezone(self):
        assert resolve_timezone("Asia/Tokyo").key == "Asia/Tokyo"

    def test_resolve_rejects_path_like_names(self):
        with pytest.raises(InvalidTimezoneError):
            resolve_timezone("../etc/passwd")

    def test_civil_midnight(self):
        """Midnight of a civil date is converted to its UTC instant."""
        assert civil_midnight(date(2025, 7, 1), "Europe/London") == utc(2025, 6, 30, 23)
        assert civil_midnight(date(2025, 1, 1), "Europe/London") == utc(2025, 1, 1)

    def test_civil_today(self):
        """The civil date depends on the timezone."""
        now = utc(2025, 1, 25, 23, 30)
        assert civil_today("UTC", now=now) == date(2025, 1, 25)
        assert civil_today("Asia/Tokyo", now=now) == date(2025, 1, 26)


class TestPeriodIds:
    """Tests for period id helpers."""

    def test_period_id_formats(self):
        assert period_id("day", date(2025, 3, 7)) == "2025-03-07"
        assert period_id("month", date(2025, 3, 7)) == "2025-03"

    def test_period_id_rejects_hour(self):
        with pytest.raises(UnsupportedGranularityError):
            period_id("hour", date(2025, 3, 7))

    def test_list_day_ids_is_half_open(self):
        assert list_period_ids("day", date(2025, 1, 30), date(2025, 2, 2)) == [
            "2025-01-30",
            "2025-01-31",
            "2025-02-01",
        ]

    def test_list_month_ids_excludes_end_month(self):
        assert list_period_ids("month", date(2024, 11, 15), date(2025, 2, 10)) == [
            "2024-11",
            "2024-12",
            "2025-01",
        ]

    def test_empty_range(self):
        assert list_period_ids("day", date(2025, 1, 5), date(2025, 1, 5)) == []

    def test_add_months_across_years(self):
        assert add_months(date(2024, 11, 20), 3) == date(2025, 2, 1)
        assert add_months(date(2025, 1, 1), -1) == date(2024, 12, 1)

    def test_parse_period_id(self):
        assert parse_period_id("day", "2025-02-28") == date(2025, 2, 28)
        assert parse_period_id("month", "2025-02") == date(2025, 2, 1)

    def test_period_start_is_local_midnight(self):
        assert period_start("day", "2025-01-25", "UTC") == utc(2025, 1, 25)
        assert period_start("month", "2025-07", "Europe/London") == utc(2025, 6, 30, 23)
        assert period_start("month", "2025-01", "America/New_York") == utc(2025, 1, 1, 5)

    def test_period_start_on_dst_day(self):
        """The spring-forward day in London runs 23 hours."""
        start = period_start("day", "2025-03-30", "Europe/London")
        end = period_start("day", "2025-03-31", "Europe/London")

        assert start == utc(2025, 3, 30)
        assert end == utc(2025, 3, 30, 23)
        assert end - start == timedelta(hours=23)

    def test_period_start_rejects_hour(self):
        with pytest.raises(UnsupportedGranularityError):
            period_start("hour", "2025-01-25T10", "UTC")

    def test_ids_sort_chronologically(self):
        ids = list_period_ids("day", date(2024, 12, 25), date(2025, 1, 10))
        assert ids == sorted(ids)


class TestClampInterval:
    """Tests for clamping intervals to a window."""

    def test_clamps_both_edges(self):
        result = clamp_interval(
            utc(2025, 1, 1, 22), utc(2025, 1, 3, 2), utc(2025, 1, 2), utc(2025, 1, 3)
        )
        assert result == (utc(2025, 1, 2), utc(2025, 1, 3))

    def test_inside_window_unchanged(self):
        result = clamp_interval(
            utc(2025, 1, 2, 10), utc(2025, 1, 2, 11), utc(2025, 1, 2), utc(2025, 1, 3)
        )
        assert result == (utc(2025, 1, 2, 10), utc(2025, 1, 2, 11))

    def test_outside_window_is_none(self):
        assert clamp_interval(
            utc(2025, 1, 3, 10), utc(2025, 1, 3, 11), utc(2025, 1, 2), utc(2025, 1, 3)
        ) is None

    def test_touching_edge_is_none(self):
        """Intervals are half-open: ending exactly at the window start is outside."""
        assert clamp_interval(
            utc(2025, 1, 1, 23), utc(2025, 1, 2), utc(2025, 1, 2), utc(2025, 1, 3)
        ) is None
